"""Centralized forwarder settings using pydantic-settings.

This module provides a single source of truth for forwarder defaults loaded
from environment variables (or a ``.env`` file). Command-line flags override
these values; see ``kube_forwarder.cli``.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kube_forwarder.constants import (
    DEFAULT_BIND_ADDRESS,
    DEFAULT_REPORT_BUFFER_PER_TARGET,
    DEFAULT_RETRY_INTERVAL_SECONDS,
)


class Settings(BaseSettings):
    """Forwarder configuration loaded from environment variables.

    All settings have sensible defaults for interactive use. Override via
    environment variables as documented per field.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cluster access
    namespace: str = Field(
        default="",
        description="Default namespace for resources without one (empty = kubeconfig context)",
        validation_alias="KUBE_FORWARDER_NAMESPACE",
    )
    kubeconfig: str = Field(
        default="",
        description="Path to the kubeconfig file (empty = ~/.kube/config)",
        validation_alias="KUBE_FORWARDER_KUBECONFIG",
    )

    # Forwarding behavior
    bind_address: str = Field(
        default=DEFAULT_BIND_ADDRESS,
        description="Local address the forwarded ports are bound on",
        validation_alias="KUBE_FORWARDER_BIND_ADDRESS",
    )
    retry_interval_seconds: float = Field(
        default=DEFAULT_RETRY_INTERVAL_SECONDS,
        gt=0,
        description="Seconds to wait before re-establishing a failed forward",
        validation_alias="KUBE_FORWARDER_RETRY_INTERVAL_SECONDS",
    )

    # Reports
    report_severity: str = Field(
        default="info",
        description="Minimum report severity shown (trace, debug, info, warning, error)",
        validation_alias="KUBE_FORWARDER_SEVERITY",
    )
    report_buffer_per_target: int = Field(
        default=DEFAULT_REPORT_BUFFER_PER_TARGET,
        gt=0,
        description="Report stream slots reserved per forwarded resource",
        validation_alias="KUBE_FORWARDER_REPORT_BUFFER_PER_TARGET",
    )
    color: bool = Field(
        default=True,
        description="Colour report output by severity",
        validation_alias="KUBE_FORWARDER_COLOR",
    )

    # Logging configuration
    log_level: str = Field(
        default="WARNING",
        validation_alias="KUBE_FORWARDER_LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=False,
        validation_alias="KUBE_FORWARDER_JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="KUBE_FORWARDER_CORRELATION_IDS",
        description="Tag log lines with the resource they belong to",
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=0,
        validation_alias="KUBE_FORWARDER_METRICS_PORT",
        description="Port for the Prometheus metrics endpoint (0 = disabled)",
    )
    metrics_host: str = Field(
        default="127.0.0.1",
        validation_alias="KUBE_FORWARDER_METRICS_HOST",
        description="Host address to bind metrics server",
    )


# Global settings instance - initialized once at module import
settings = Settings()

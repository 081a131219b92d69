"""
Observability package - logging and metrics for kube-forwarder.
"""

from .logging import set_correlation_id, setup_structured_logging
from .metrics import MetricsServer, metrics_collector

__all__ = [
    "setup_structured_logging",
    "set_correlation_id",
    "MetricsServer",
    "metrics_collector",
]

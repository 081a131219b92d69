"""
Error handling module for kube-forwarder.

This module provides the error hierarchy shared by the resolver, the tunnel
sessions and the supervisor, with a clear split between retryable and fatal
failures.
"""

from .forwarder_errors import (
    ConfigurationError,
    ForwarderError,
    KubernetesAPIError,
    LaunchError,
    NoCandidatesError,
    NotFoundError,
    ParseError,
    ResolutionError,
    TunnelError,
)

__all__ = [
    "ForwarderError",
    "ParseError",
    "ConfigurationError",
    "ResolutionError",
    "NotFoundError",
    "NoCandidatesError",
    "KubernetesAPIError",
    "TunnelError",
    "LaunchError",
]

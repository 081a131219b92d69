"""
Forwarder error hierarchy with user guidance.

This module defines the error types used throughout kube-forwarder. Errors
raised while resolving or running a tunnel (ResolutionError, TunnelError)
drive the supervisor's retry loop; errors raised while parsing input or
preparing the initial launch (ParseError, ConfigurationError, LaunchError)
end the process at startup.
"""


class ForwarderError(Exception):
    """
    Base error class for all forwarder-related exceptions.

    Carries the underlying cause and, for fatal errors, what the user should
    do about it.
    """

    def __init__(
        self,
        message: str,
        user_action: str | None = None,
        cause: Exception | None = None,
    ):
        """
        Initialize forwarder error.

        Args:
            message: Human-readable error description
            user_action: What user should do to resolve the issue
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.user_action = user_action
        self.cause = cause

    def describe(self) -> str:
        """Message with the user guidance appended, for fatal CLI output."""
        base_msg = str(self)
        if self.user_action:
            return f"{base_msg}\nAction required: {self.user_action}"
        return base_msg


class ParseError(ForwarderError):
    """Malformed resource specifier or option value."""

    def __init__(self, message: str, value: str | None = None):
        if value is not None:
            message = f"{message}: {value}"
        super().__init__(
            message=message,
            user_action="Use the form [namespace/]pod|service|deployment/name:localPort:remotePort",
        )


class ConfigurationError(ForwarderError):
    """Error in cluster credentials or forwarder configuration."""

    def __init__(
        self,
        message: str,
        user_action: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(
            message=message,
            user_action=user_action or "Check the kubeconfig path and current context",
            cause=cause,
        )


class ResolutionError(ForwarderError):
    """A resource reference could not be resolved to a pod right now."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message=message, cause=cause)


class NotFoundError(ResolutionError):
    """The referenced pod or service does not exist."""

    def __init__(self, kind: str, name: str, namespace: str):
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.name = name
        self.namespace = namespace


class NoCandidatesError(ResolutionError):
    """The referenced service or deployment has no pods to connect to."""

    def __init__(self, kind: str, name: str, namespace: str):
        super().__init__(f"no pods found for {kind} {namespace}/{name}")
        self.kind = kind
        self.name = name
        self.namespace = namespace


class KubernetesAPIError(ResolutionError):
    """Error communicating with Kubernetes API."""

    def __init__(
        self, message: str, reason: str | None = None, cause: Exception | None = None
    ):
        if reason:
            message = f"{message} (reason: {reason})"
        super().__init__(f"Kubernetes API error: {message}", cause=cause)
        self.reason = reason
        self.user_action = "Check RBAC permissions and cluster connectivity"


class TunnelError(ForwarderError):
    """Transport-level failure of an attempted or established tunnel."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message=message, cause=cause)


class LaunchError(ForwarderError):
    """A forwarding attempt could not even be started."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            user_action="Check the cluster configuration and resource specifiers",
            cause=cause,
        )

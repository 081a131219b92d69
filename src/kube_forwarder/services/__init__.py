"""
Service layer for kube-forwarder.

This module provides the endpoint resolver, the tunnel sessions and the
forwarding supervisor that coordinates them.
"""

from .resolver import EndpointResolver
from .supervisor import ForwardingSupervisor, LoopState
from .tunnel import SessionResult, SessionState, TunnelSession

__all__ = [
    "EndpointResolver",
    "TunnelSession",
    "SessionState",
    "SessionResult",
    "ForwardingSupervisor",
    "LoopState",
]

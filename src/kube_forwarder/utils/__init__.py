"""
Utils package - Kubernetes access for the forwarder.

Contains helper modules for:
- Cluster configuration loading and read-only resource queries
- The local-port-to-pod forwarding transport
"""

from kube_forwarder.utils.kubernetes import (
    ClusterClient,
    PodInfo,
    get_default_namespace,
    load_kubernetes_config,
)

__all__ = [
    "ClusterClient",
    "PodInfo",
    "get_default_namespace",
    "load_kubernetes_config",
]

"""
kube-forwarder - keep local ports forwarded to pods in a Kubernetes cluster.

Forward targets can be:
- A single pod
- A pod picked at random from the endpoints of a service
- A pod picked at random among those owned by a deployment

Every forward is re-established automatically until the process is stopped.
"""

__version__ = "0.1.0"

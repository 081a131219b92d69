"""
Constants used throughout kube-forwarder.

This module defines all constant values used by the forwarder including:
- Retry and buffering defaults for the supervisor and report stream
- Kubernetes owner reference kinds used by deployment resolution
- Default namespace and bind address
- Report message templates
"""

# Retry configuration
# Fixed interval between reconnection attempts; there is no backoff and no limit
DEFAULT_RETRY_INTERVAL_SECONDS = 5.0

# Report stream buffering (slots per forwarded resource)
DEFAULT_REPORT_BUFFER_PER_TARGET = 16

# Seconds to wait for forwarders to wind down after a fatal startup error
SHUTDOWN_GRACE_SECONDS = 10.0

# Kubernetes defaults
DEFAULT_NAMESPACE = "default"
DEFAULT_BIND_ADDRESS = "127.0.0.1"
PORTFORWARD_READ_CHUNK = 65536

# Seconds between checks that the pod behind an idle tunnel is still running
POD_CHECK_INTERVAL_SECONDS = 5.0

# Namespace file mounted into pods for in-cluster configuration
SERVICE_ACCOUNT_NAMESPACE_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

# Owner reference kinds followed when resolving deployments
OWNER_KIND_REPLICA_SET = "ReplicaSet"
OWNER_KIND_DEPLOYMENT = "Deployment"

# Report message templates
MSG_ESTABLISHING = "establishing port forwarding for {} ..."
MSG_ESTABLISHED = "established port forwarding to {} ({})"
MSG_FORWARD_ERROR = "error forwarding ports: {}"
MSG_RESOLVE_ERROR = "couldn't establish port forwarding -> {}"
MSG_RETRYING = "trying to restart forwarder..."
MSG_RESTARTED = "restarted forwarder..."
MSG_LOOP_STOPPED = "received stop signal, no more attempts to restart forwarder"
MSG_STOPPING_ALL = "received stop signal, stopping all forwarders..."
MSG_ALL_STOPPED = "all forwarders stopped"
MSG_SENDING_STOP = "sending stop signal to forwarder..."

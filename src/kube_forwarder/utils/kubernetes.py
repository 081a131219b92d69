"""
Kubernetes utilities for kube-forwarder.

This module wraps the ``kubernetes`` client library behind the small set of
read-only queries the forwarder needs, plus construction of the per-pod port
forward transport.

Key functionality:
- Loading cluster configuration from a kubeconfig file or in-cluster
- Default namespace lookup from the kubeconfig's current context
- Pod existence checks, service endpoint listing and pod ownership chains
- Opening a local-port-to-pod tunnel
"""

import io
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from kube_forwarder.constants import (
    DEFAULT_BIND_ADDRESS,
    OWNER_KIND_DEPLOYMENT,
    OWNER_KIND_REPLICA_SET,
    SERVICE_ACCOUNT_NAMESPACE_PATH,
)
from kube_forwarder.errors import (
    ConfigurationError,
    KubernetesAPIError,
    LaunchError,
    NotFoundError,
)
from kube_forwarder.utils.portforward import PodPortForward

logger = logging.getLogger(__name__)

DEFAULT_KUBECONFIG = os.path.join(os.path.expanduser("~"), ".kube", "config")


@dataclass(frozen=True)
class OwnerLink:
    """One hop in a pod's ownership chain."""

    kind: str
    name: str


@dataclass(frozen=True)
class PodInfo:
    """A pod name together with the owners above it, nearest first."""

    name: str
    owner_chain: tuple[OwnerLink, ...] = ()

    def is_owned_by_deployment(self, deployment: str) -> bool:
        """True if a ReplicaSet in the chain is owned by the named Deployment."""
        chain = self.owner_chain
        return any(
            chain[i].kind == OWNER_KIND_REPLICA_SET
            and chain[i + 1].kind == OWNER_KIND_DEPLOYMENT
            and chain[i + 1].name == deployment
            for i in range(len(chain) - 1)
        )


def load_kubernetes_config(kubeconfig_path: str | None = None) -> client.ApiClient:
    """
    Build a Kubernetes API client.

    Uses the given kubeconfig file, or ``~/.kube/config`` when it exists,
    and falls back to in-cluster configuration otherwise.

    Returns:
        Configured Kubernetes API client

    Raises:
        ConfigurationError: If no usable configuration could be loaded
    """
    configuration = client.Configuration()
    path = kubeconfig_path or DEFAULT_KUBECONFIG

    try:
        if kubeconfig_path or os.path.exists(path):
            config.load_kube_config(config_file=path, client_configuration=configuration)
            logger.debug(f"Loaded kubeconfig from {path}")
        else:
            config.load_incluster_config(client_configuration=configuration)
            logger.debug("Loaded in-cluster Kubernetes configuration")
    except (config.ConfigException, OSError) as e:
        logger.error(f"Failed to load Kubernetes configuration: {e}")
        raise ConfigurationError(
            f"error building kubeconfig from {path}: {e}", cause=e
        ) from e

    return client.ApiClient(configuration)


def get_default_namespace(kubeconfig_path: str | None = None) -> str | None:
    """
    Read the namespace of the kubeconfig's current context.

    Mirrors ``load_kubernetes_config``: without a kubeconfig file the
    service account namespace mounted into the pod is used instead.

    Returns:
        The namespace, or None if the context does not set one

    Raises:
        ConfigurationError: If the kubeconfig cannot be read
    """
    if not kubeconfig_path and not os.path.exists(DEFAULT_KUBECONFIG):
        return _service_account_namespace()

    try:
        _, active_context = config.list_kube_config_contexts(
            config_file=kubeconfig_path or DEFAULT_KUBECONFIG
        )
    except (config.ConfigException, OSError) as e:
        raise ConfigurationError(f"failed to load kubeconfig: {e}", cause=e) from e

    if not active_context:
        raise ConfigurationError("current context not found")

    return active_context.get("context", {}).get("namespace") or None


def _service_account_namespace() -> str | None:
    try:
        with open(SERVICE_ACCOUNT_NAMESPACE_PATH, encoding="utf-8") as f:
            return f.read().strip() or None
    except OSError as e:
        raise ConfigurationError(
            f"no kubeconfig at {DEFAULT_KUBECONFIG} and no service account namespace: {e}",
            cause=e,
        ) from e


class ClusterClient:
    """Read-only cluster queries and tunnel construction for the forwarder."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)

    def pod_exists(self, namespace: str, name: str) -> bool:
        """
        Check whether a pod exists.

        Raises:
            KubernetesAPIError: For API failures other than 404
        """
        try:
            self.core_v1.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesAPIError(
                f"error getting pod {namespace}/{name}", reason=e.reason, cause=e
            ) from e
        return True

    def list_service_endpoints(self, namespace: str, service: str) -> list[str]:
        """
        List the names of the pods currently backing a service.

        Raises:
            NotFoundError: If the service has no Endpoints object
            KubernetesAPIError: For other API failures
        """
        try:
            endpoints = self.core_v1.read_namespaced_endpoints(
                name=service, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("service", service, namespace) from e
            raise KubernetesAPIError(
                f"error getting endpoints for {namespace}/{service}",
                reason=e.reason,
                cause=e,
            ) from e

        pods = []
        for subset in endpoints.subsets or []:
            for address in subset.addresses or []:
                if address.target_ref is not None and address.target_ref.name:
                    pods.append(address.target_ref.name)

        logger.debug(f"Service {namespace}/{service} is backed by {len(pods)} pods")
        return pods

    def list_pods(self, namespace: str) -> list[PodInfo]:
        """
        List all pods in a namespace with their ownership chains.

        Pods owned by a ReplicaSet get that ReplicaSet's own owners appended.
        ReplicaSets that disappear while listing are skipped.

        Raises:
            KubernetesAPIError: If pods or ReplicaSets cannot be read
        """
        try:
            pod_list = self.core_v1.list_namespaced_pod(namespace=namespace)
        except ApiException as e:
            raise KubernetesAPIError(
                f"error listing pods in {namespace}", reason=e.reason, cause=e
            ) from e

        replica_set_owners: dict[str, tuple[OwnerLink, ...] | None] = {}
        pods = []
        for pod in pod_list.items:
            chain: list[OwnerLink] = []
            for owner in pod.metadata.owner_references or []:
                chain.append(OwnerLink(owner.kind, owner.name))
                if owner.kind != OWNER_KIND_REPLICA_SET:
                    continue
                if owner.name not in replica_set_owners:
                    replica_set_owners[owner.name] = self._replica_set_owners(
                        namespace, owner.name
                    )
                chain.extend(replica_set_owners[owner.name] or ())
            pods.append(PodInfo(name=pod.metadata.name, owner_chain=tuple(chain)))

        return pods

    def _replica_set_owners(
        self, namespace: str, name: str
    ) -> tuple[OwnerLink, ...] | None:
        try:
            replica_set = self.apps_v1.read_namespaced_replica_set(
                name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"ReplicaSet {namespace}/{name} vanished while listing")
                return None
            raise KubernetesAPIError(
                f"error getting replica set {namespace}/{name}",
                reason=e.reason,
                cause=e,
            ) from e

        return tuple(
            OwnerLink(owner.kind, owner.name)
            for owner in replica_set.metadata.owner_references or []
        )

    def open_tunnel(
        self,
        namespace: str,
        pod: str,
        ports: list[str],
        stdout: io.StringIO,
        stderr: io.StringIO,
        error_handler: Callable[[str], None] | None = None,
        address: str = DEFAULT_BIND_ADDRESS,
    ) -> PodPortForward:
        """
        Build the port forward transport for one pod.

        Nothing is bound until the returned tunnel's ``run()`` is awaited.

        Raises:
            LaunchError: If the client has no API server to connect to
        """
        host = getattr(self.api_client.configuration, "host", None)
        if not host:
            raise LaunchError("error building port forwarder: no Kubernetes API host")

        try:
            return PodPortForward(
                self.core_v1,
                namespace=namespace,
                pod=pod,
                ports=ports,
                stdout=stdout,
                stderr=stderr,
                error_handler=error_handler,
                address=address,
            )
        except ValueError as e:
            raise LaunchError(f"error creating port forwarder: {e}", cause=e) from e

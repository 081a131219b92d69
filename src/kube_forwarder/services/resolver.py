"""
Endpoint resolution for resource references.

Turns a ResourceReference into the one pod a connection attempt should use.
Nothing is cached: every call queries the cluster again, so a service or
deployment may resolve to a different pod each time.
"""

import asyncio
import logging
import random

from kube_forwarder.errors import (
    ForwarderError,
    NoCandidatesError,
    NotFoundError,
    ResolutionError,
)
from kube_forwarder.models import ResolvedTarget, ResourceKind, ResourceReference
from kube_forwarder.utils.kubernetes import ClusterClient

logger = logging.getLogger(__name__)


class EndpointResolver:
    """
    Resolve resource references to concrete pods.

    Args:
        cluster: Cluster client used for read-only queries
        rng: Random source for picking among candidates. When omitted, a fresh
            ``random.Random()`` is created for every call.
    """

    def __init__(self, cluster: ClusterClient, rng: random.Random | None = None):
        self.cluster = cluster
        self.rng = rng

    async def resolve(self, reference: ResourceReference) -> ResolvedTarget:
        """
        Resolve a reference to a pod.

        Raises:
            NotFoundError: The referenced pod or service does not exist
            NoCandidatesError: A service or deployment has no pods
            ResolutionError: Any other failure talking to the cluster
        """
        try:
            if reference.kind is ResourceKind.POD:
                pod = await self._resolve_pod(reference)
            elif reference.kind is ResourceKind.SERVICE:
                pod = await self._resolve_service(reference)
            else:
                pod = await self._resolve_deployment(reference)
        except ForwarderError:
            raise
        except Exception as e:
            raise ResolutionError(
                f"error resolving {reference}: {e}", cause=e
            ) from e

        logger.debug(
            f"Resolved {reference} to pod {pod}",
            extra={
                "resource_kind": reference.kind.value,
                "resource_name": reference.name,
                "namespace": reference.namespace,
                "pod": pod,
            },
        )
        return ResolvedTarget.for_pod(reference, pod)

    async def _resolve_pod(self, reference: ResourceReference) -> str:
        exists = await asyncio.to_thread(
            self.cluster.pod_exists, reference.namespace, reference.name
        )
        if not exists:
            raise NotFoundError("pod", reference.name, reference.namespace)
        return reference.name

    async def _resolve_service(self, reference: ResourceReference) -> str:
        pods = await asyncio.to_thread(
            self.cluster.list_service_endpoints, reference.namespace, reference.name
        )
        if not pods:
            raise NoCandidatesError("service", reference.name, reference.namespace)
        return self._pick(pods)

    async def _resolve_deployment(self, reference: ResourceReference) -> str:
        pods = await asyncio.to_thread(self.cluster.list_pods, reference.namespace)
        matches = [
            pod.name for pod in pods if pod.is_owned_by_deployment(reference.name)
        ]
        if not matches:
            raise NoCandidatesError("deployment", reference.name, reference.namespace)
        return self._pick(matches)

    def _pick(self, candidates: list[str]) -> str:
        if len(candidates) == 1:
            return candidates[0]
        rng = self.rng if self.rng is not None else random.Random()
        return rng.choice(candidates)

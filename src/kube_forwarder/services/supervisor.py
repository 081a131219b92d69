"""
Forwarding supervisor.

The supervisor owns every requested forward. For each resource reference it
runs one supervised loop that resolves a pod, starts a tunnel session and,
whenever the session or the resolution fails, waits a fixed interval and
tries again, forever, until the global stop event is set.

Stop protocol:
1. The caller sets the stop event passed to ``forward()``.
2. The supervisor sets its internal target-stop event. Every session and
   every retry timer is waiting on it.
3. The supervisor waits for every supervised loop to reach ``Stopped``.
4. Only then is the done event returned by ``forward()`` set.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from enum import Enum

from kube_forwarder.constants import (
    DEFAULT_RETRY_INTERVAL_SECONDS,
    MSG_ALL_STOPPED,
    MSG_LOOP_STOPPED,
    MSG_RESOLVE_ERROR,
    MSG_RESTARTED,
    MSG_RETRYING,
    MSG_STOPPING_ALL,
)
from kube_forwarder.errors import ForwarderError, LaunchError
from kube_forwarder.models import ResourceReference
from kube_forwarder.observability.logging import set_correlation_id
from kube_forwarder.observability.metrics import metrics_collector
from kube_forwarder.reports import ReportStream, Severity
from kube_forwarder.services.resolver import EndpointResolver
from kube_forwarder.services.tunnel import TunnelSession
from kube_forwarder.utils.kubernetes import ClusterClient

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    CONNECTING = "Connecting"
    ACTIVE = "Active"
    RETRYING = "Retrying"
    STOPPED = "Stopped"


class SupervisedForward:
    """Bookkeeping for one reference's supervised loop."""

    def __init__(self, reference: ResourceReference):
        self.reference = reference
        self.state = LoopState.CONNECTING
        self.attempts = 0
        self.session: TunnelSession | None = None


class ForwardingSupervisor:
    """
    Establish, monitor and re-establish one tunnel per resource reference.

    Args:
        cluster: Cluster client shared by all sessions
        reports: Stream receiving every operational report
        resolver: Endpoint resolver (defaults to one built on ``cluster``)
        retry_interval: Seconds between a failure and the next attempt
        address: Local bind address for forwarded ports
        session_factory: Callable building a TunnelSession for a target
    """

    def __init__(
        self,
        cluster: ClusterClient,
        reports: ReportStream,
        resolver: EndpointResolver | None = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SECONDS,
        address: str | None = None,
        session_factory: Callable[..., TunnelSession] = TunnelSession,
    ):
        self.cluster = cluster
        self.reports = reports
        self.resolver = resolver or EndpointResolver(cluster)
        self.retry_interval = retry_interval
        self.address = address
        self.session_factory = session_factory

        self._target_stop = asyncio.Event()
        self._launched = asyncio.Event()
        self._done = asyncio.Event()
        self._forwards: list[SupervisedForward] = []
        self._tasks: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None

    @property
    def done(self) -> asyncio.Event:
        """Set once every supervised loop has stopped after a stop request."""
        return self._done

    def snapshot(self) -> dict[str, str]:
        """Current loop state per forwarded reference."""
        return {str(f.reference): f.state.value for f in self._forwards}

    async def forward(
        self, references: Sequence[ResourceReference], stop: asyncio.Event
    ) -> asyncio.Event:
        """
        Launch one supervised loop per reference.

        Returns once every initial attempt has been launched, not necessarily
        succeeded. A reference whose pod cannot be resolved yet is retried in
        the background.

        Args:
            references: References with their namespaces already defaulted
            stop: Global stop event; set it to shut everything down

        Returns:
            The done event, set after all loops have stopped

        Raises:
            LaunchError: If an initial attempt could not be started. Loops
                launched before the failure keep running until ``stop``.
        """
        if self._watcher is not None:
            raise RuntimeError("forward() may only be called once per supervisor")

        self._watcher = asyncio.create_task(self._watch_stop(stop), name="stop watcher")
        try:
            for reference in references:
                if self._target_stop.is_set():
                    break
                if not reference.namespace:
                    raise LaunchError(
                        f"error starting forwarder: {reference} has no namespace"
                    )

                forward = SupervisedForward(reference)
                self._forwards.append(forward)
                try:
                    session = await self._attempt(forward, initial=True)
                except LaunchError as e:
                    forward.state = LoopState.STOPPED
                    raise LaunchError(f"error starting forwarder: {e}", cause=e) from e

                self._tasks.append(
                    asyncio.create_task(
                        self._supervise(forward, session), name=f"forward {reference}"
                    )
                )
        finally:
            self._launched.set()

        return self._done

    async def _watch_stop(self, stop: asyncio.Event) -> None:
        await stop.wait()
        await self.reports.emit(Severity.INFO, MSG_STOPPING_ALL)
        self._target_stop.set()

        # forward() may still be finishing an initial attempt
        await self._launched.wait()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.reports.emit(Severity.INFO, MSG_ALL_STOPPED)
        self._done.set()

    async def _supervise(
        self, forward: SupervisedForward, session: TunnelSession | None
    ) -> None:
        reference = forward.reference
        set_correlation_id(str(reference))
        try:
            while True:
                if session is not None:
                    forward.state = LoopState.ACTIVE
                    result = await session.wait()
                    forward.session = None
                    metrics_collector.session_ended(
                        reference, "error" if result.is_error else "stopped"
                    )
                    if not result.is_error:
                        logger.debug(f"Forward {reference} ended on request")
                        break

                forward.state = LoopState.RETRYING
                if await self._wait_retry():
                    await self.reports.emit(Severity.INFO, MSG_LOOP_STOPPED, reference)
                    break

                await self.reports.emit(Severity.TRACE, MSG_RETRYING, reference)
                session = await self._attempt(forward)
                if session is not None:
                    await self.reports.emit(Severity.INFO, MSG_RESTARTED, reference)
        finally:
            forward.state = LoopState.STOPPED

    async def _wait_retry(self) -> bool:
        """Wait out the retry interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._target_stop.wait(), timeout=self.retry_interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _attempt(
        self, forward: SupervisedForward, initial: bool = False
    ) -> TunnelSession | None:
        """
        Resolve a pod and start a session for it.

        Returns:
            The started session, or None if resolution or launch failed (already
            reported) or stop was requested

        Raises:
            LaunchError: Only for the initial attempt
        """
        reference = forward.reference
        if self._target_stop.is_set():
            return None

        forward.state = LoopState.CONNECTING
        forward.attempts += 1
        logger.debug(
            f"Attempt {forward.attempts} for {reference}",
            extra={"attempt": forward.attempts, "operation": "resolve"},
        )

        try:
            target = await self.resolver.resolve(reference)
        except ForwarderError as e:
            metrics_collector.record_resolution_error(reference, e)
            metrics_collector.record_attempt(reference, "resolution_error")
            await self.reports.emit(
                Severity.ERROR, MSG_RESOLVE_ERROR.format(e), reference
            )
            return None

        # No new sessions once stop has been requested
        if self._target_stop.is_set():
            return None

        session = self.session_factory(
            self.cluster, target, self.reports, address=self.address
        )
        try:
            session.start(self._target_stop)
        except LaunchError as e:
            metrics_collector.record_attempt(reference, "launch_error")
            if initial:
                raise
            await self.reports.emit(Severity.ERROR, str(e), reference)
            return None

        metrics_collector.record_attempt(reference, "launched")
        metrics_collector.session_started(reference)
        forward.session = session
        return session

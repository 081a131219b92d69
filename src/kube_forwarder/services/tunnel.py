"""
Tunnel sessions.

A TunnelSession owns exactly one running forward to one resolved pod. It
reports progress into the report stream and delivers exactly one terminal
result: a clean end when the stop event was set, or a TunnelError.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from enum import Enum

from kube_forwarder.constants import (
    MSG_ESTABLISHED,
    MSG_ESTABLISHING,
    MSG_FORWARD_ERROR,
)
from kube_forwarder.errors import TunnelError
from kube_forwarder.models import ResolvedTarget
from kube_forwarder.reports import ReportStream, Severity
from kube_forwarder.utils.kubernetes import ClusterClient

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    ENDED = "Ended"


@dataclass(frozen=True)
class SessionResult:
    """Terminal outcome of a tunnel session."""

    target: ResolvedTarget
    error: Exception | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


def flatten(text: str) -> str:
    """Collapse multi-line transport output into a single report line."""
    return text.strip().replace("\n", "; ")


class TunnelSession:
    """One live forward from the declared local port to a resolved pod."""

    def __init__(
        self,
        cluster: ClusterClient,
        target: ResolvedTarget,
        reports: ReportStream,
        address: str | None = None,
    ):
        self.cluster = cluster
        self.target = target
        self.reports = reports
        self.address = address
        self.source = target.reference
        self.state = SessionState.PENDING
        self.error: Exception | None = None
        self._stdout = io.StringIO()
        self._stderr = io.StringIO()
        self._tunnel = None
        self._task: asyncio.Task | None = None
        self._result: asyncio.Future[SessionResult] | None = None

    def start(self, stop: asyncio.Event) -> None:
        """
        Build the transport and start forwarding in the background.

        Args:
            stop: Event that ends the session cleanly when set

        Raises:
            LaunchError: If the transport cannot be built
            RuntimeError: If the session was already started
        """
        if self._task is not None:
            raise RuntimeError("tunnel session already started")

        tunnel_kwargs = {}
        if self.address is not None:
            tunnel_kwargs["address"] = self.address
        self._tunnel = self.cluster.open_tunnel(
            self.target.namespace,
            self.target.pod,
            self.target.ports,
            stdout=self._stdout,
            stderr=self._stderr,
            error_handler=self._on_transport_error,
            **tunnel_kwargs,
        )

        self._result = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(
            self._run(stop), name=f"tunnel {self.source} -> {self.target.pod}"
        )
        self._task.add_done_callback(self._on_task_done)

    async def wait(self) -> SessionResult:
        """Wait for the terminal result of a started session."""
        if self._result is None:
            raise RuntimeError("tunnel session not started")
        return await asyncio.shield(self._result)

    async def _run(self, stop: asyncio.Event) -> None:
        await self.reports.emit(
            Severity.DEBUG, MSG_ESTABLISHING.format(self.target.pod), self.source
        )

        ready = asyncio.Event()
        ready_reporter = asyncio.create_task(self._report_ready(ready))
        error: Exception | None = None
        try:
            await self._tunnel.run(ready, stop)
            if not stop.is_set():
                error = TunnelError(f"port forwarding to {self.target.pod} ended")
        except asyncio.CancelledError:
            ready_reporter.cancel()
            raise
        except TunnelError as e:
            error = e
        except Exception as e:
            logger.debug(f"Unexpected tunnel failure for {self.source}", exc_info=True)
            error = TunnelError(str(e), cause=e)

        # Keep "established" and its diagnostics ahead of the terminal report
        if ready.is_set():
            await ready_reporter
        else:
            ready_reporter.cancel()

        if error is not None:
            await self.reports.emit(
                Severity.ERROR, MSG_FORWARD_ERROR.format(error), self.source
            )
        self._finish(error)

    async def _report_ready(self, ready: asyncio.Event) -> None:
        await ready.wait()
        self.state = SessionState.READY
        await self.reports.emit(
            Severity.INFO,
            MSG_ESTABLISHED.format(self.target.pod, ", ".join(self.target.ports)),
            self.source,
        )

        errors = self._stderr.getvalue()
        if errors:
            await self.reports.emit(Severity.ERROR, flatten(errors), self.source)

        output = self._stdout.getvalue()
        if output:
            await self.reports.emit(Severity.INFO, flatten(output), self.source)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._finish(TunnelError("tunnel session cancelled"))

    def _on_transport_error(self, message: str) -> None:
        self.reports.emit_nowait(Severity.ERROR, flatten(message), self.source)

    def _finish(self, error: Exception | None) -> None:
        self.state = SessionState.ENDED
        self.error = error
        if self._result is not None and not self._result.done():
            self._result.set_result(SessionResult(self.target, error))

"""
Local port to pod port forwarding transport.

Dials the pod once before binding anything, then binds one local TCP
listener per port pair and relays every accepted connection through a
``kubernetes.stream.portforward`` stream to the pod. While the tunnel is up
the pod is re-read periodically so a pod that goes away ends the tunnel even
when no traffic flows. The stream multiplexing itself is handled by the
kubernetes client library.
"""

import asyncio
import contextlib
import io
import logging
from collections.abc import Callable

from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward

from kube_forwarder.constants import (
    DEFAULT_BIND_ADDRESS,
    POD_CHECK_INTERVAL_SECONDS,
    PORTFORWARD_READ_CHUNK,
)
from kube_forwarder.errors import TunnelError

logger = logging.getLogger(__name__)


def parse_port_pairs(ports: list[str]) -> list[tuple[int, int]]:
    """
    Parse ``local:remote`` strings.

    Raises:
        ValueError: If a pair is malformed
    """
    pairs = []
    for item in ports:
        local, sep, remote = item.partition(":")
        if not sep:
            raise ValueError(f"invalid port pair '{item}'")
        pairs.append((int(local), int(remote)))
    return pairs


def describe_stream_error(error: Exception) -> str:
    """One-line description of a failure to open a port forward stream."""
    if isinstance(error, ApiException):
        return f"({error.status}) {error.reason}"
    return str(error).strip().replace("\n", "; ")


class PodPortForward:
    """
    A running forward from local ports to one pod.

    ``run()`` blocks until the stop event is set (clean end) or the pod can
    no longer be reached (``TunnelError``). Progress lines are written to
    ``stdout``, per-connection diagnostics to ``stderr`` and ``error_handler``.
    """

    def __init__(
        self,
        core_v1,
        namespace: str,
        pod: str,
        ports: list[str],
        stdout: io.StringIO | None = None,
        stderr: io.StringIO | None = None,
        error_handler: Callable[[str], None] | None = None,
        address: str = DEFAULT_BIND_ADDRESS,
        check_interval: float = POD_CHECK_INTERVAL_SECONDS,
    ):
        self.core_v1 = core_v1
        self.namespace = namespace
        self.pod = pod
        self.port_pairs = parse_port_pairs(ports)
        self.stdout = stdout if stdout is not None else io.StringIO()
        self.stderr = stderr if stderr is not None else io.StringIO()
        self.error_handler = error_handler
        self.address = address
        self.check_interval = check_interval
        self.bound_ports: dict[int, int] = {}
        self._servers: list[asyncio.Server] = []
        self._connections: set[asyncio.Task] = set()
        self._check_now = asyncio.Event()
        self._failed = asyncio.Event()
        self._failure: Exception | None = None

    async def run(self, ready: asyncio.Event, stop: asyncio.Event) -> None:
        """
        Dial the pod, bind the local ports and forward until stopped.

        ``ready`` is set only after the pod answered and every port is bound.

        Raises:
            TunnelError: If the pod cannot be reached, binding fails, or the
                pod stops running while forwarding
        """
        await self._dial()

        try:
            for local_port, remote_port in self.port_pairs:
                server = await asyncio.start_server(
                    self._connection_handler(local_port, remote_port),
                    host=self.address,
                    port=local_port,
                )
                self._servers.append(server)
                bound = server.sockets[0].getsockname()[1]
                self.bound_ports[local_port] = bound
                self.stdout.write(
                    f"Forwarding from {self.address}:{bound} -> {remote_port}\n"
                )
        except OSError as e:
            await self._close()
            raise TunnelError(f"unable to listen on port: {e}", cause=e) from e

        ready.set()

        watcher = asyncio.create_task(self._watch_pod(), name=f"watch pod {self.pod}")
        stop_waiter = asyncio.create_task(stop.wait())
        failure_waiter = asyncio.create_task(self._failed.wait())
        try:
            await asyncio.wait(
                {stop_waiter, failure_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (watcher, stop_waiter, failure_waiter):
                task.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            await self._close()

        if not stop.is_set() and self._failure is not None:
            raise TunnelError(
                f"lost connection to pod {self.pod}: {self._failure}",
                cause=self._failure,
            )

    async def _dial(self) -> None:
        ports = ",".join(str(remote_port) for _, remote_port in self.port_pairs)
        try:
            stream = await self._open_stream(ports)
        except Exception as e:
            raise TunnelError(
                f"unable to reach pod {self.pod}: {describe_stream_error(e)}", cause=e
            ) from e
        logger.debug(f"Dialed pod {self.namespace}/{self.pod} on ports {ports}")
        with contextlib.suppress(Exception):
            stream.close()

    async def _open_stream(self, ports: str):
        """
        Open a port forward stream in a worker thread.

        A stream that finishes opening after the caller was cancelled is
        closed instead of leaked.
        """
        future = asyncio.ensure_future(
            asyncio.to_thread(
                portforward,
                self.core_v1.connect_get_namespaced_pod_portforward,
                self.pod,
                self.namespace,
                ports=ports,
            )
        )
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_close_abandoned_stream)
            raise

    async def _watch_pod(self) -> None:
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._check_now.wait(), self.check_interval)
            self._check_now.clear()

            try:
                problem = await asyncio.to_thread(self._pod_problem)
            except Exception as e:
                # API unreachable says nothing about the pod; check again later
                logger.debug(f"Checking pod {self.namespace}/{self.pod} failed: {e}")
                continue

            if problem is not None:
                self._fail(TunnelError(problem))
                return

    def _pod_problem(self) -> str | None:
        """Why the pod can no longer serve the tunnel, or None if it can."""
        try:
            pod = self.core_v1.read_namespaced_pod(name=self.pod, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return "pod not found"
            raise

        if pod.metadata.deletion_timestamp is not None:
            return "pod is terminating"
        if pod.status.phase != "Running":
            return f"pod phase is {pod.status.phase}"
        return None

    def _connection_handler(self, local_port: int, remote_port: int):
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
            task = asyncio.current_task()
            self._connections.add(task)
            try:
                await self._forward_connection(local_port, remote_port, reader, writer)
            finally:
                self._connections.discard(task)

        return handle

    async def _forward_connection(
        self,
        local_port: int,
        remote_port: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.stdout.write(f"Handling connection for {local_port}\n")
        stream = None
        pod_writer = None
        try:
            try:
                stream = await self._open_stream(str(remote_port))
            except Exception as e:
                self._report_error(
                    f"error opening stream for port {local_port} -> {remote_port}: "
                    f"{describe_stream_error(e)}"
                )
                # Only this connection is dropped unless the pod itself is gone
                self._check_now.set()
                return

            pod_socket = stream.socket(remote_port)
            # The client wraps its end of a socketpair; asyncio needs the real socket
            raw_socket = getattr(pod_socket, "_socket", pod_socket)
            pod_reader, pod_writer = await asyncio.open_connection(sock=raw_socket)
            await asyncio.gather(
                _pipe(reader, pod_writer),
                _pipe(pod_reader, writer),
            )
        except (OSError, asyncio.IncompleteReadError) as e:
            self._report_error(
                f"error copying data for port {local_port} -> {remote_port}: {e}"
            )
        finally:
            if pod_writer is not None:
                pod_writer.close()
            if stream is not None:
                error = stream.error(remote_port)
                if error:
                    self._report_error(
                        f"an error occurred forwarding {local_port} -> {remote_port}: {error}"
                    )
                with contextlib.suppress(Exception):
                    stream.close()
            writer.close()

    def _report_error(self, message: str) -> None:
        self.stderr.write(message + "\n")
        if self.error_handler is not None:
            self.error_handler(message)

    def _fail(self, error: Exception) -> None:
        if self._failure is None:
            self._failure = error
        self._failed.set()

    async def _close(self) -> None:
        for server in self._servers:
            server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        for server in self._servers:
            await server.wait_closed()
        self._servers = []


def _close_abandoned_stream(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    with contextlib.suppress(Exception):
        future.result().close()


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while data := await reader.read(PORTFORWARD_READ_CHUNK):
            writer.write(data)
            await writer.drain()
    finally:
        if writer.can_write_eof():
            with contextlib.suppress(OSError):
                writer.write_eof()

"""Unit tests for ForwardingSupervisor retry and stop behaviour."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from kube_forwarder.constants import (
    MSG_ALL_STOPPED,
    MSG_LOOP_STOPPED,
    MSG_RESTARTED,
    MSG_STOPPING_ALL,
)
from kube_forwarder.errors import LaunchError, NoCandidatesError, TunnelError
from kube_forwarder.models import ResolvedTarget, parse_resource
from kube_forwarder.reports import ReportStream, Severity
from kube_forwarder.services import ForwardingSupervisor, LoopState
from kube_forwarder.services.tunnel import SessionResult


class FakeSessions:
    """
    Session factory handing out scripted sessions.

    Each outcome is consumed by one session: "fail" ends with a TunnelError
    right away, "hold" runs until the stop event, "launch_error" fails start().
    Once the script runs out every further session holds.
    """

    def __init__(self, *outcomes: str):
        self.outcomes = list(outcomes)
        self.created = []

    def __call__(self, cluster, target, reports, address=None):
        outcome = self.outcomes.pop(0) if self.outcomes else "hold"
        session = FakeSession(target, outcome, address)
        self.created.append(session)
        return session


class FakeSession:
    def __init__(self, target, outcome, address):
        self.target = target
        self.outcome = outcome
        self.address = address
        self.stop = None

    def start(self, stop):
        if self.outcome == "launch_error":
            raise LaunchError("error building port forwarder: no Kubernetes API host")
        self.stop = stop

    async def wait(self):
        if self.outcome == "fail":
            await asyncio.sleep(0)
            return SessionResult(self.target, TunnelError("lost connection"))
        await self.stop.wait()
        return SessionResult(self.target)


def resolver_returning_pod(pod: str = "web-0"):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(
        side_effect=lambda ref: ResolvedTarget.for_pod(ref, pod)
    )
    return resolver


def failing_resolver():
    def no_pods(ref):
        raise NoCandidatesError(ref.kind.value, ref.name, ref.namespace)

    resolver = MagicMock()
    resolver.resolve = AsyncMock(side_effect=no_pods)
    return resolver


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def messages(reports: ReportStream) -> list[tuple[Severity, str]]:
    items = []
    while (report := reports.get_nowait()) is not None:
        items.append((report.severity, report.message))
    return items


@pytest.fixture
def reports():
    return ReportStream(targets=1, per_target=1000)


def make_supervisor(reports, resolver, sessions=None, retry_interval=0.01):
    return ForwardingSupervisor(
        MagicMock(),
        reports,
        resolver=resolver,
        retry_interval=retry_interval,
        session_factory=sessions or FakeSessions(),
    )


class TestRetries:
    @pytest.mark.asyncio
    async def test_resolution_failures_are_retried(self, reports):
        resolver = failing_resolver()
        supervisor = make_supervisor(reports, resolver)
        stop = asyncio.Event()

        done = await supervisor.forward([parse_resource("ns/service/web:8080:80")], stop)
        await eventually(lambda: resolver.resolve.await_count >= 3)
        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)

        reported = messages(reports)
        assert (
            Severity.ERROR,
            "couldn't establish port forwarding -> no pods found for service ns/web",
        ) in reported
        assert (Severity.INFO, MSG_LOOP_STOPPED) in reported
        assert reported[-1] == (Severity.INFO, MSG_ALL_STOPPED)

    @pytest.mark.asyncio
    async def test_failed_session_is_reestablished(self, reports):
        resolver = resolver_returning_pod()
        sessions = FakeSessions("fail", "hold")
        supervisor = make_supervisor(reports, resolver, sessions)
        stop = asyncio.Event()
        ref = parse_resource("ns/deployment/api:8080:80")

        done = await supervisor.forward([ref], stop)
        await eventually(lambda: len(sessions.created) == 2)
        await eventually(lambda: supervisor.snapshot()[str(ref)] == "Active")

        assert resolver.resolve.await_count == 2
        assert (Severity.INFO, MSG_RESTARTED) in messages(reports)

        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)
        assert supervisor.snapshot() == {str(ref): LoopState.STOPPED.value}

    @pytest.mark.asyncio
    async def test_retries_follow_fixed_interval(self, reports):
        """Two retries land within 2.2 intervals, none before the first one."""
        loop = asyncio.get_running_loop()
        resolver = failing_resolver()
        supervisor = make_supervisor(reports, resolver, retry_interval=0.05)
        stop = asyncio.Event()

        started = loop.time()
        done = await supervisor.forward([parse_resource("ns/pod/web:1:1")], stop)
        assert resolver.resolve.await_count == 1

        await asyncio.sleep(0.03)
        assert resolver.resolve.await_count == 1

        await eventually(lambda: resolver.resolve.await_count >= 3, timeout=0.5)
        assert loop.time() - started < 0.2

        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_retry_interval_is_respected(self, reports):
        resolver = failing_resolver()
        supervisor = make_supervisor(reports, resolver, retry_interval=10)
        stop = asyncio.Event()

        done = await supervisor.forward([parse_resource("ns/pod/web:1:1")], stop)
        await asyncio.sleep(0.05)

        assert resolver.resolve.await_count == 1
        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_later_launch_errors_are_reported_not_raised(self, reports):
        sessions = FakeSessions("fail", "launch_error", "hold")
        supervisor = make_supervisor(reports, resolver_returning_pod(), sessions)
        stop = asyncio.Event()

        done = await supervisor.forward([parse_resource("ns/pod/web:1:1")], stop)
        await eventually(lambda: len(sessions.created) == 3)

        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)
        assert any(
            severity is Severity.ERROR and "no Kubernetes API host" in message
            for severity, message in messages(reports)
        )


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_while_retrying_ends_all_loops(self, reports):
        resolver = failing_resolver()
        supervisor = make_supervisor(reports, resolver, retry_interval=30)
        stop = asyncio.Event()
        refs = [parse_resource(f"ns/service/svc-{i}:{8000 + i}:80") for i in range(3)]

        done = await supervisor.forward(refs, stop)
        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)

        assert resolver.resolve.await_count == 3
        await asyncio.sleep(0.05)
        assert resolver.resolve.await_count == 3
        assert set(supervisor.snapshot().values()) == {"Stopped"}

        reported = messages(reports)
        assert reported.count((Severity.INFO, MSG_LOOP_STOPPED)) == 3
        assert reported.index((Severity.INFO, MSG_STOPPING_ALL)) < reported.index(
            (Severity.INFO, MSG_ALL_STOPPED)
        )

    @pytest.mark.asyncio
    async def test_active_sessions_end_cleanly(self, reports):
        sessions = FakeSessions()
        supervisor = make_supervisor(reports, resolver_returning_pod(), sessions)
        stop = asyncio.Event()
        refs = [parse_resource("ns/pod/a:1:1"), parse_resource("ns/pod/b:2:2")]

        done = await supervisor.forward(refs, stop)
        await eventually(
            lambda: set(supervisor.snapshot().values()) == {"Active"}
        )
        stop.set()
        await asyncio.wait_for(done.wait(), timeout=2)

        assert len(sessions.created) == 2
        assert all(s.stop.is_set() for s in sessions.created)


class TestLaunch:
    @pytest.mark.asyncio
    async def test_initial_launch_error_is_fatal(self, reports):
        sessions = FakeSessions("launch_error")
        supervisor = make_supervisor(reports, resolver_returning_pod(), sessions)
        stop = asyncio.Event()

        with pytest.raises(LaunchError, match="error starting forwarder"):
            await supervisor.forward([parse_resource("ns/pod/web:1:1")], stop)

        stop.set()
        await asyncio.wait_for(supervisor.done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_missing_namespace_is_fatal(self, reports):
        supervisor = make_supervisor(reports, resolver_returning_pod())
        stop = asyncio.Event()

        with pytest.raises(LaunchError, match="has no namespace"):
            await supervisor.forward([parse_resource("pod/web:1:1")], stop)

        stop.set()
        await asyncio.wait_for(supervisor.done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_initial_resolution_failure_is_not_fatal(self, reports):
        supervisor = make_supervisor(reports, failing_resolver(), retry_interval=30)
        stop = asyncio.Event()
        ref = parse_resource("ns/pod/web:1:1")

        await supervisor.forward([ref], stop)

        await eventually(lambda: supervisor.snapshot()[str(ref)] == "Retrying")
        stop.set()
        await asyncio.wait_for(supervisor.done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_forward_only_once(self, reports):
        supervisor = make_supervisor(reports, resolver_returning_pod())
        stop = asyncio.Event()
        await supervisor.forward([], stop)

        with pytest.raises(RuntimeError):
            await supervisor.forward([], stop)

        stop.set()
        await asyncio.wait_for(supervisor.done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_bind_address_is_passed_to_sessions(self, reports):
        sessions = FakeSessions()
        supervisor = ForwardingSupervisor(
            MagicMock(),
            reports,
            resolver=resolver_returning_pod(),
            address="0.0.0.0",
            session_factory=sessions,
        )
        stop = asyncio.Event()

        await supervisor.forward([parse_resource("ns/pod/web:1:1")], stop)
        stop.set()
        await asyncio.wait_for(supervisor.done.wait(), timeout=2)

        assert sessions.created[0].address == "0.0.0.0"
        assert sessions.created[0].target.pod == "web-0"

#!/usr/bin/env python3
"""
kube-forwarder command line entry point.

Forward one or more local ports to pods, services or deployments and keep the
forwards alive until interrupted.

Usage:
    kube-forwarder [options] [namespace/]kind/name:localPort:remotePort ...
    python -m kube_forwarder [options] RESOURCE ...

    kind is one of pod, service or deployment. For services and deployments a
    pod is picked at random on every (re)connection.

Environment Variables:
    KUBE_FORWARDER_NAMESPACE: Default namespace for resources without one
    KUBE_FORWARDER_KUBECONFIG: Path to the kubeconfig file
    KUBE_FORWARDER_SEVERITY: Minimum report severity shown
    KUBE_FORWARDER_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    KUBE_FORWARDER_METRICS_PORT: Serve Prometheus metrics on this port
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from kube_forwarder.constants import (
    DEFAULT_NAMESPACE,
    MSG_SENDING_STOP,
    SHUTDOWN_GRACE_SECONDS,
)
from kube_forwarder.errors import ConfigurationError, LaunchError, ParseError
from kube_forwarder.models import ResourceReference, parse_resource
from kube_forwarder.observability.logging import setup_structured_logging
from kube_forwarder.observability.metrics import MetricsServer
from kube_forwarder.reports import ReportPrinter, ReportStream, Severity
from kube_forwarder.services import ForwardingSupervisor
from kube_forwarder.settings import Settings
from kube_forwarder.settings import settings as forwarder_settings
from kube_forwarder.utils.kubernetes import (
    DEFAULT_KUBECONFIG,
    ClusterClient,
    get_default_namespace,
    load_kubernetes_config,
)

logger = logging.getLogger(__name__)

SEVERITY_CHOICES = [severity.name.lower() for severity in Severity]


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser(settings: Settings = forwarder_settings) -> ArgumentParser:
    """Build the argument parser with defaults taken from settings."""
    parser = ArgumentParser(
        prog="kube-forwarder",
        description=(
            "Forward one or more local ports to a pod. Use resource kind/name "
            "such as deployment/mydeployment to select a pod."
        ),
    )
    parser.add_argument(
        "resources",
        nargs="*",
        metavar="RESOURCE",
        help="[namespace/]kind/name:localPort:remotePort, kind is pod, service or deployment",
    )
    parser.add_argument(
        "-r",
        "--resource",
        action="append",
        default=[],
        dest="extra_resources",
        metavar="RESOURCE",
        help="Additional resource (may be repeated)",
    )
    parser.add_argument(
        "-n",
        "--namespace",
        default=settings.namespace,
        help="Namespace for resources that don't name one (default: kubeconfig context)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=settings.kubeconfig,
        help=f"Path to kubeconfig file (default: {DEFAULT_KUBECONFIG})",
    )
    parser.add_argument(
        "-s",
        "--severity",
        default=settings.report_severity.lower(),
        choices=SEVERITY_CHOICES,
        type=str.lower,
        help="Minimum severity of reports shown (default: %(default)s)",
    )
    parser.add_argument(
        "--address",
        default=settings.bind_address,
        help="Local address to bind forwarded ports on (default: %(default)s)",
    )
    parser.add_argument(
        "--retry-interval",
        type=float,
        default=settings.retry_interval_seconds,
        help="Seconds between reconnection attempts (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Diagnostic log level (default: %(default)s)",
    )
    parser.add_argument(
        "--json-logs",
        action=argparse.BooleanOptionalAction,
        default=settings.json_logs,
        help="Emit diagnostic logs as JSON",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=settings.metrics_port,
        help="Serve Prometheus metrics and status on this port (0 disables)",
    )
    parser.add_argument(
        "--color",
        action=argparse.BooleanOptionalAction,
        default=settings.color,
        help="Colour report output by severity",
    )
    return parser


def determine_namespace(
    namespace: str, kubeconfig: str | None, reports: ReportStream
) -> str:
    """Pick the default namespace: flag, then kubeconfig context, then 'default'."""
    if namespace.strip():
        return namespace.strip()

    try:
        context_namespace = get_default_namespace(kubeconfig)
    except ConfigurationError as e:
        reports.emit_nowait(
            Severity.WARNING,
            f"couldn't determine default namespace, using '{DEFAULT_NAMESPACE}': {e}",
        )
        return DEFAULT_NAMESPACE

    return context_namespace or DEFAULT_NAMESPACE


def _install_signal_handlers(stop: asyncio.Event, reports: ReportStream) -> list:
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        if not stop.is_set():
            reports.emit_nowait(Severity.INFO, MSG_SENDING_STOP)
            stop.set()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, request_stop)
            installed.append(sig)
    return installed


async def run(
    args: argparse.Namespace,
    references: list[ResourceReference],
    severity: Severity,
    settings: Settings = forwarder_settings,
) -> int:
    """Run the forwarders until a stop signal; returns the process exit code."""
    kubeconfig = args.kubeconfig or None
    api_client = load_kubernetes_config(kubeconfig)

    reports = ReportStream(
        len(references), per_target=settings.report_buffer_per_target
    )
    printer = ReportPrinter(severity, color=args.color)
    printer_task = asyncio.create_task(printer.run(reports), name="report printer")

    namespace = determine_namespace(args.namespace, kubeconfig, reports)
    references = [reference.with_namespace(namespace) for reference in references]

    supervisor = ForwardingSupervisor(
        ClusterClient(api_client),
        reports,
        retry_interval=args.retry_interval,
        address=args.address,
    )

    stop = asyncio.Event()
    installed_signals = _install_signal_handlers(stop, reports)

    metrics_server = None
    if args.metrics_port:
        metrics_server = MetricsServer(
            port=args.metrics_port,
            host=settings.metrics_host,
            status_provider=supervisor.snapshot,
        )
        try:
            await metrics_server.start()
        except OSError as e:
            logger.warning(f"Continuing without metrics server: {e}")
            metrics_server = None

    exit_code = 0
    try:
        done = await supervisor.forward(references, stop)
        await done.wait()
    except LaunchError as e:
        print(e.describe(), file=sys.stderr)
        exit_code = 1
        stop.set()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(supervisor.done.wait(), SHUTDOWN_GRACE_SECONDS)
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed_signals:
            loop.remove_signal_handler(sig)
        if metrics_server is not None:
            await metrics_server.stop()
        printer_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await printer_task
        printer.flush(reports)
        api_client.close()

    return exit_code


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    specifiers = [*args.resources, *args.extra_resources]
    if not specifiers:
        print("at least one resource must be specified", file=sys.stderr)
        return 1

    try:
        severity = Severity.from_string(args.severity)
        references = [parse_resource(specifier) for specifier in specifiers]
    except ParseError as e:
        print(f"Error parsing resource: {e}", file=sys.stderr)
        return 1

    setup_structured_logging(
        log_level=args.log_level,
        enable_json_formatting=args.json_logs,
        correlation_id_enabled=forwarder_settings.correlation_ids,
    )

    try:
        return asyncio.run(run(args, references, severity))
    except ConfigurationError as e:
        print(e.describe(), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

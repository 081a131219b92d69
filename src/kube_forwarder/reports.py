"""
Report stream for user-visible forwarder activity.

Every resolver, session and supervised loop emits severity-tagged reports
into one shared ``ReportStream``. A single consumer, the ``ReportPrinter``,
drains the stream and decides what is shown: filtering by minimum severity
happens at consumption, producers always emit.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import TextIO

from kube_forwarder.constants import DEFAULT_REPORT_BUFFER_PER_TARGET
from kube_forwarder.errors import ParseError

logger = logging.getLogger(__name__)

RESET = "\033[0m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"


class Severity(IntEnum):
    """Report severities, ordered from least to most severe."""

    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARNING = 3
    ERROR = 4

    @classmethod
    def from_string(cls, value: str) -> "Severity":
        """
        Parse a severity name case-insensitively.

        Raises:
            ParseError: If the name is not a known severity
        """
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ParseError("unknown severity", value) from None

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Report:
    """A single operational event."""

    severity: Severity
    message: str
    source: str | None = None

    @property
    def text(self) -> str:
        if self.source is not None:
            return f"[{self.severity}] [{self.source}] {self.message}"
        return f"[{self.severity}] {self.message}"

    def __str__(self) -> str:
        return self.text


class ReportStream:
    """
    Multi-producer, single-consumer channel of reports.

    The buffer is sized per forwarded target so ordinary bursts from many
    concurrent sessions never block producers.
    """

    def __init__(self, targets: int, per_target: int = DEFAULT_REPORT_BUFFER_PER_TARGET):
        self.maxsize = max(1, targets) * per_target
        self._queue: asyncio.Queue[Report] = asyncio.Queue(maxsize=self.maxsize)

    async def emit(
        self, severity: Severity, message: str, source: object | None = None
    ) -> None:
        """Publish a report, waiting for buffer space if needed."""
        await self._queue.put(_build(severity, message, source))

    def emit_nowait(
        self, severity: Severity, message: str, source: object | None = None
    ) -> bool:
        """
        Publish a report from synchronous code.

        Returns:
            False if the buffer was full and the report was dropped
        """
        report = _build(severity, message, source)
        try:
            self._queue.put_nowait(report)
        except asyncio.QueueFull:
            logger.warning(f"Report stream full, dropping report: {report.text}")
            return False
        return True

    async def get(self) -> Report:
        return await self._queue.get()

    def get_nowait(self) -> Report | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()


def _build(severity: Severity, message: str, source: object | None) -> Report:
    return Report(
        severity=severity,
        message=message,
        source=str(source) if source is not None else None,
    )


class ReportPrinter:
    """
    The report consumer used by the CLI.

    Reports below ``min_severity`` are discarded. Errors go to stderr, all
    other reports to stdout, coloured by severity.
    """

    COLORS = {
        Severity.TRACE: CYAN,
        Severity.DEBUG: CYAN,
        Severity.INFO: GREEN,
        Severity.WARNING: YELLOW,
        Severity.ERROR: RED,
    }

    def __init__(
        self,
        min_severity: Severity = Severity.INFO,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        color: bool = True,
    ):
        self.min_severity = min_severity
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.color = color

    def accepts(self, report: Report) -> bool:
        return report.severity >= self.min_severity

    def dump(self, report: Report) -> bool:
        """
        Print a single report if it passes the severity filter.

        Returns:
            True if the report was printed
        """
        if not self.accepts(report):
            return False

        line = report.text
        if self.color:
            line = f"{self.COLORS[report.severity]}{line}{RESET}"

        stream = self.stderr if report.severity >= Severity.ERROR else self.stdout
        print(line, file=stream, flush=True)
        return True

    async def run(self, stream: ReportStream) -> None:
        """Drain the stream until cancelled."""
        while True:
            self.dump(await stream.get())

    def flush(self, stream: ReportStream) -> int:
        """Print everything still buffered; returns the number of reports drained."""
        drained = 0
        while (report := stream.get_nowait()) is not None:
            self.dump(report)
            drained += 1
        return drained

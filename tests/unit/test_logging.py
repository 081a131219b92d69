"""Unit tests for structured logging setup."""

import asyncio
import json
import logging
import sys

import pytest

from kube_forwarder.observability.logging import (
    CorrelationIDFilter,
    StructuredFormatter,
    correlation_id,
    get_correlation_id,
    set_correlation_id,
    setup_structured_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "kube_forwarder.test", logging.INFO, __file__, 1, "hello %s", ("world",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_formats_json_with_known_fields(self):
        record = make_record(correlation_id="abc123", pod="web-0", unrelated="x")

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["correlation_id"] == "abc123"
        assert data["pod"] == "web-0"
        assert "unrelated" not in data

    def test_includes_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord(
                "t", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(StructuredFormatter().format(record))
        assert "ValueError: bad" in data["exception"]


class TestCorrelationIDs:
    def test_filter_uses_current_id(self):
        token = correlation_id.set("ns/pod/web")
        try:
            record = make_record()
            assert CorrelationIDFilter().filter(record) is True
            assert record.correlation_id == "ns/pod/web"
        finally:
            correlation_id.reset(token)

    @pytest.mark.asyncio
    async def test_ids_are_isolated_per_task(self):
        async def tagged(name: str) -> str:
            set_correlation_id(name)
            await asyncio.sleep(0)
            return get_correlation_id()

        results = await asyncio.gather(tagged("a"), tagged("b"))

        assert results == ["a", "b"]


class TestSetup:
    def test_json_handler_installed(self):
        setup_structured_logging(log_level="debug", enable_json_formatting=True)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("kubernetes").level == logging.WARNING

    def test_unknown_level_falls_back_to_warning(self):
        setup_structured_logging(log_level="chatty", correlation_id_enabled=False)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not root.handlers[0].filters

"""
Unit tests for MetricsCollector methods in observability/metrics.py.

Tests the individual methods of MetricsCollector to verify they call the
correct Prometheus metric objects with the correct label values.
"""

from unittest.mock import MagicMock, patch

import pytest

from kube_forwarder.errors import NoCandidatesError
from kube_forwarder.models import parse_resource
from kube_forwarder.observability.metrics import MetricsCollector, get_metrics_registry


@pytest.fixture
def collector():
    """Create a MetricsCollector with the registry init patched out."""
    with patch(
        "kube_forwarder.observability.metrics.get_metrics_registry",
        return_value=MagicMock(),
    ):
        return MetricsCollector()


@pytest.fixture
def reference():
    return parse_resource("ns/service/web:8080:80")


class TestAttempts:
    @patch("kube_forwarder.observability.metrics.FORWARD_ATTEMPTS_TOTAL")
    def test_record_attempt(self, mock_attempts, collector, reference):
        collector.record_attempt(reference, "launched")
        mock_attempts.labels.assert_called_with(
            namespace="ns", kind="service", name="web", result="launched"
        )
        mock_attempts.labels().inc.assert_called_once()

    @patch("kube_forwarder.observability.metrics.RESOLUTION_ERRORS_TOTAL")
    def test_record_resolution_error(self, mock_errors, collector, reference):
        """The error type label is the exception class name."""
        collector.record_resolution_error(
            reference, NoCandidatesError("service", "web", "ns")
        )
        mock_errors.labels.assert_called_with(
            namespace="ns", kind="service", error_type="NoCandidatesError"
        )
        mock_errors.labels().inc.assert_called_once()


class TestSessions:
    @patch("kube_forwarder.observability.metrics.SESSIONS_ACTIVE")
    def test_session_started(self, mock_active, collector, reference):
        collector.session_started(reference)
        mock_active.labels.assert_called_with(namespace="ns", kind="service", name="web")
        mock_active.labels().inc.assert_called_once()

    @patch("kube_forwarder.observability.metrics.SESSION_ENDS_TOTAL")
    @patch("kube_forwarder.observability.metrics.SESSIONS_ACTIVE")
    def test_session_ended(self, mock_active, mock_ends, collector, reference):
        collector.session_ended(reference, "error")
        mock_active.labels().dec.assert_called_once()
        mock_ends.labels.assert_called_with(
            namespace="ns", kind="service", name="web", reason="error"
        )
        mock_ends.labels().inc.assert_called_once()


def test_registry_exposes_forwarder_metrics():
    """The shared registry carries the metrics recorded above."""
    collector = MetricsCollector()
    collector.record_attempt(parse_resource("registry-ns/pod/db:1:2"), "launched")

    value = get_metrics_registry().get_sample_value(
        "kube_forwarder_attempts_total",
        {"namespace": "registry-ns", "kind": "pod", "name": "db", "result": "launched"},
    )
    assert value == 1.0

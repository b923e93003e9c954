"""
tests/unit/test_telemetry.py — Run Metrics

Covers:
  - metric naming and statsd line format
  - InMemoryMetricSink ordering / clear
  - StatsdMetricSink delivers a datagram to a real UDP socket on localhost
  - send failures are swallowed and logged
"""

from __future__ import annotations

import socket
from unittest.mock import MagicMock, patch

import pytest

from compliance_scheduler.telemetry import (
    InMemoryMetricSink,
    Metric,
    StatsdMetricSink,
    metric_name_for,
)


class TestMetric:
    def test_name_for_task(self):
        assert metric_name_for("nightly-scan") == "compliance.nightly-scan:tests_pass"

    def test_custom_prefix(self):
        assert metric_name_for("t", prefix="acme.agent") == "acme.agent.t:tests_pass"

    def test_statsd_line(self):
        metric = Metric(name=metric_name_for("t"), value=7, task_name="t")
        assert metric.to_statsd() == "compliance.t:tests_pass:7|g\n"


class TestInMemorySink:
    def test_keeps_emission_order(self):
        sink = InMemoryMetricSink()
        sink.emit(Metric(name="a", value=1))
        sink.emit(Metric(name="b", value=2))
        assert [m.name for m in sink.metrics] == ["a", "b"]
        assert sink.lines() == ["a:1|g\n", "b:2|g\n"]
        sink.clear()
        assert sink.metrics == []


class TestStatsdSink:
    @pytest.fixture
    def receiver(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("127.0.0.1", 0))
        sock.settimeout(2)
        yield sock
        sock.close()

    def test_sends_datagram(self, receiver):
        host, port = receiver.getsockname()
        sink = StatsdMetricSink(host, port)
        try:
            sink.emit(Metric(name=metric_name_for("t"), value=3))
            data, _ = receiver.recvfrom(1024)
        finally:
            sink.close()
        assert data == b"compliance.t:tests_pass:3|g\n"

    def test_send_error_is_swallowed(self):
        sink = StatsdMetricSink("127.0.0.1", 8125)
        broken = MagicMock()
        broken.sendto.side_effect = OSError("network unreachable")
        with patch("compliance_scheduler.telemetry.statsd.socket.socket", return_value=broken):
            sink.emit(Metric(name="m", value=1))  # should not raise
        broken.sendto.assert_called_once()
        sink.close()
        broken.close.assert_called_once()

    def test_close_is_idempotent(self):
        sink = StatsdMetricSink()
        sink.close()
        sink.close()

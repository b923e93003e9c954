"""
telemetry/statsd.py — Run Metrics

One gauge per successful run, named from the task:

    <prefix>.<task name>:tests_pass   value = module-reported passCount

StatsdMetricSink writes `<name>:<value>|g\\n` datagrams over UDP and never
waits for (or learns about) delivery. InMemoryMetricSink keeps everything
in a list for tests and dry runs.
"""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

from compliance_scheduler.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_PREFIX = "compliance"


@dataclass(frozen=True)
class Metric:
    name: str
    value: int
    task_name: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_statsd(self) -> str:
        return f"{self.name}:{self.value}|g\n"


def metric_name_for(task_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Deterministic metric name for a task: `<prefix>.<task>:tests_pass`."""
    return f"{prefix}.{task_name}:tests_pass"


class MetricSink(Protocol):
    def emit(self, metric: Metric) -> None: ...

    def close(self) -> None: ...


class StatsdMetricSink:
    """Fire-and-forget UDP statsd client. Send errors are logged, never raised."""

    def __init__(self, host: str = "127.0.0.1", port: int = 8125) -> None:
        self._addr = (host, port)
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()

    def emit(self, metric: Metric) -> None:
        payload = metric.to_statsd().encode("utf-8")
        try:
            with self._lock:
                if self._sock is None:
                    self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                    self._sock.setblocking(False)
                self._sock.sendto(payload, self._addr)
        except OSError as e:
            log.warning("telemetry.statsd_send_failed", metric=metric.name, error=str(e))
            return
        log.debug("telemetry.metric_sent", metric=metric.name, value=metric.value)

    def close(self) -> None:
        with self._lock:
            if self._sock is not None:
                self._sock.close()
                self._sock = None


class InMemoryMetricSink:
    """Collects metrics in emission order."""

    def __init__(self) -> None:
        self.metrics: list[Metric] = []
        self._lock = threading.Lock()

    def emit(self, metric: Metric) -> None:
        with self._lock:
            self.metrics.append(metric)

    def close(self) -> None:
        pass

    def lines(self) -> list[str]:
        return [m.to_statsd() for m in self.metrics]

    def clear(self) -> None:
        with self._lock:
            self.metrics.clear()

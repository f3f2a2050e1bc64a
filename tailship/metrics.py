"""Thread-safe agent counters and periodic reporting."""

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class _Counters:
    lines: int = 0
    dropped: int = 0
    batches_sent: int = 0
    events_sent: int = 0
    batches_failed: int = 0
    events_failed: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0

    def as_dict(self) -> dict:
        sent = self.batches_sent
        return {
            "lines": self.lines,
            "dropped": self.dropped,
            "batches_sent": sent,
            "events_sent": self.events_sent,
            "batches_failed": self.batches_failed,
            "events_failed": self.events_failed,
            "avg_latency_ms": self.latency_total_ms / sent if sent else 0.0,
            "max_latency_ms": self.latency_max_ms,
        }


class Metrics:
    """Counters shared by tailer threads and the dispatch loop.

    Two sets are kept: lifetime totals for ``snapshot()`` and the shutdown
    summary, and an interval set that ``snapshot_and_reset()`` hands to the
    periodic reporter and then zeroes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._total = _Counters()
        self._interval = _Counters()

    def _both(self):
        return (self._total, self._interval)

    def record_line(self, accepted: bool = True):
        """Record a line read from a source; ``accepted=False`` means it was dropped."""
        with self._lock:
            for c in self._both():
                c.lines += 1
                if not accepted:
                    c.dropped += 1

    def record_shipped(self, events: int, latency_ms: float):
        with self._lock:
            for c in self._both():
                c.batches_sent += 1
                c.events_sent += events
                c.latency_total_ms += latency_ms
                c.latency_max_ms = max(c.latency_max_ms, latency_ms)

    def record_failed(self, events: int):
        with self._lock:
            for c in self._both():
                c.batches_failed += 1
                c.events_failed += events

    def snapshot(self) -> dict:
        """Lifetime totals."""
        with self._lock:
            return self._total.as_dict()

    def snapshot_and_reset(self) -> dict:
        """Atomically read the interval counters and start a new interval."""
        with self._lock:
            snap = self._interval.as_dict()
            self._interval = _Counters()
        return snap


def format_snapshot(snap: dict) -> str:
    return (
        f"lines={snap['lines']} dropped={snap['dropped']} "
        f"sent={snap['events_sent']}/{snap['batches_sent']} batches "
        f"failed={snap['events_failed']}/{snap['batches_failed']} batches "
        f"avg_latency={snap['avg_latency_ms']:.1f}ms "
        f"max_latency={snap['max_latency_ms']:.1f}ms"
    )


class MetricsReporter:
    """Background thread that periodically logs metrics summaries."""

    def __init__(
        self,
        metrics: Metrics,
        interval: float,
        shutdown_event: threading.Event,
        log: logging.Logger | None = None,
    ):
        self._metrics = metrics
        self._interval = interval
        self._shutdown = shutdown_event
        self._log = log or logger
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the reporter thread."""
        self._thread = threading.Thread(target=self._report_loop, name="metrics", daemon=True)
        self._thread.start()

    def stop(self):
        """Wait for the reporter to notice shutdown."""
        if self._thread:
            self._thread.join(timeout=5)

    def _report_loop(self):
        while not self._shutdown.is_set():
            self._shutdown.wait(self._interval)
            if self._shutdown.is_set():
                break
            self._log.info("[metrics] %s", format_snapshot(self._metrics.snapshot_and_reset()))

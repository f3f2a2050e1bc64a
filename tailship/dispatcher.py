"""Per-stream batching and dispatch loop."""

import logging
import queue
import threading
import time

from tailship.config import StreamConfig
from tailship.metrics import Metrics
from tailship.shipper import ShipError

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
FLUSH_INTERVAL = 2.0
QUEUE_SIZE = 100
IDLE_WAIT = 0.05
PUT_TIMEOUT = 0.2


class StreamChannel:
    """Bounded inbound queue plus the pending batch for one stream.

    Producers only touch ``queue``; ``batch`` belongs to the dispatch loop.
    """

    def __init__(self, stream: StreamConfig, queue_size: int = QUEUE_SIZE):
        self.stream = stream
        self.queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.batch: list = []
        self.first_insert: float | None = None

    @property
    def name(self) -> str:
        return self.stream.name

    def offer(self, event, shutdown_event: threading.Event,
              timeout: float = PUT_TIMEOUT) -> bool:
        """Enqueue, blocking while the queue is full.

        Returns False, discarding the event, once shutdown is observed.
        """
        while not shutdown_event.is_set():
            try:
                self.queue.put(event, timeout=timeout)
                return True
            except queue.Full:
                continue
        return False


class Dispatcher:
    """Moves queued events into per-stream batches and ships full or aged batches.

    A batch is flushed when it reaches ``batch_size`` events or when
    ``flush_interval`` seconds have passed since its first event. A failed
    shipment is logged and the batch is discarded; there is no retry.
    """

    def __init__(
        self,
        shipper,
        shutdown_event: threading.Event,
        batch_size: int = BATCH_SIZE,
        flush_interval: float = FLUSH_INTERVAL,
        queue_size: int = QUEUE_SIZE,
        idle_wait: float = IDLE_WAIT,
        metrics: Metrics | None = None,
        log: logging.Logger | None = None,
    ):
        self._shipper = shipper
        self._shutdown = shutdown_event
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._queue_size = queue_size
        self._idle_wait = idle_wait
        self._metrics = metrics or Metrics()
        self._log = log or logger
        self._channels: list[StreamChannel] = []

    @property
    def channels(self) -> list[StreamChannel]:
        return list(self._channels)

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    def add_stream(self, stream: StreamConfig) -> StreamChannel:
        channel = StreamChannel(stream, self._queue_size)
        self._channels.append(channel)
        return channel

    # Batch operations (dispatch loop only)

    def on_event(self, channel: StreamChannel, event, now: float | None = None):
        """Append to the stream's batch; flush that stream alone when full."""
        if not channel.batch:
            channel.first_insert = time.monotonic() if now is None else now
        channel.batch.append(event)
        if len(channel.batch) >= self._batch_size:
            self._log.debug("Batch full for stream %r, shipping %d events",
                            channel.name, len(channel.batch))
            self.flush(channel)

    def on_tick(self, now: float | None = None):
        """Flush every non-empty batch whose deadline has passed."""
        now = time.monotonic() if now is None else now
        for channel in self._channels:
            if channel.batch and now - channel.first_insert >= self._flush_interval:
                self._log.debug("Deadline reached for stream %r, shipping %d events",
                                channel.name, len(channel.batch))
                self.flush(channel)

    def flush(self, channel: StreamChannel):
        """Ship the stream's batch and clear it whatever the outcome."""
        events = channel.batch
        channel.batch = []
        channel.first_insert = None
        if not events:
            return

        start = time.monotonic()
        try:
            self._shipper.ship(channel.stream, events)
        except ShipError as e:
            self._metrics.record_failed(len(events))
            self._log.warning(
                "Dropped batch of %d events for stream %r: %s (status=%s, body=%r)",
                len(events), channel.name, e, e.status, e.body,
            )
            return
        except Exception:
            self._metrics.record_failed(len(events))
            self._log.exception("Shipper failed for stream %r, dropped %d events",
                                channel.name, len(events))
            return

        elapsed_ms = (time.monotonic() - start) * 1000
        self._metrics.record_shipped(len(events), elapsed_ms)
        self._log.debug("Shipped %d events for stream %r in %.1fms",
                        len(events), channel.name, elapsed_ms)

    # Loop

    def drain(self) -> int:
        """Move queued events into batches, at most one batch per stream per call."""
        moved = 0
        for channel in self._channels:
            for _ in range(self._batch_size):
                try:
                    event = channel.queue.get_nowait()
                except queue.Empty:
                    break
                self.on_event(channel, event)
                moved += 1
        return moved

    def run(self):
        """Dispatch until shutdown is requested. Call close() afterwards."""
        self._log.debug("Dispatcher running for %d stream(s)", len(self._channels))
        while not self._shutdown.is_set():
            moved = self.drain()
            self.on_tick()
            if not moved:
                self._shutdown.wait(self._idle_wait)

    def close(self):
        """Ship whatever is still queued or batched. Producers must be stopped."""
        while self.drain():
            pass
        for channel in self._channels:
            self.flush(channel)

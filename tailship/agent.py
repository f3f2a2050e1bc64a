"""Agent: wires discovery, tailers, normalizer, dispatcher and shipper together."""

import logging
import sys
import threading

from tailship.config import AgentConfig, StreamConfig
from tailship.discovery import discover
from tailship.dispatcher import BATCH_SIZE, FLUSH_INTERVAL, Dispatcher
from tailship.metrics import Metrics, MetricsReporter, format_snapshot
from tailship.normalizer import Normalizer
from tailship.shipper import Shipper
from tailship.stdin_reader import StdinReader
from tailship.tailer import POLL_INTERVAL, RETRY_INTERVAL, ROTATION_CHECK_INTERVAL, FileTailer
from tailship.watcher import ChangeNotifier

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 5.0


class Agent:
    """Runs one tailer thread per discovered file and the dispatch loop.

    ``run()`` blocks until ``shutdown_event`` is set, then joins every tailer
    before the final flush so nothing is produced after shutdown begins.
    """

    def __init__(
        self,
        config: AgentConfig,
        shutdown_event: threading.Event,
        shipper: Shipper | None = None,
        normalizer: Normalizer | None = None,
        poll_interval: float = POLL_INTERVAL,
        rotation_interval: float = ROTATION_CHECK_INTERVAL,
        retry_interval: float = RETRY_INTERVAL,
        batch_size: int = BATCH_SIZE,
        flush_interval: float = FLUSH_INTERVAL,
        log: logging.Logger | None = None,
    ):
        self._config = config
        self._shutdown = shutdown_event
        self._log = log or logger
        self._metrics = Metrics()
        self._shipper = shipper or Shipper(config.base_url, config.key, log=self._log)
        self._normalizer = normalizer or Normalizer(unparsed=config.unparsed, log=self._log)
        self._dispatcher = Dispatcher(
            self._shipper,
            shutdown_event,
            batch_size=batch_size,
            flush_interval=flush_interval,
            metrics=self._metrics,
            log=self._log,
        )
        self._poll_interval = poll_interval
        self._rotation_interval = rotation_interval
        self._retry_interval = retry_interval
        self._tailers: list[FileTailer] = []
        self._threads: list[threading.Thread] = []

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def tailers(self) -> list[FileTailer]:
        return list(self._tailers)

    def _line_handler(self, channel):
        fmt = channel.stream.format

        def on_line(line):
            event, accepted = self._normalizer.normalize(line, fmt)
            self._metrics.record_line(accepted)
            if accepted:
                channel.offer(event, self._shutdown)

        return on_line

    def run(self):
        """Tail every discovered file until shutdown."""
        mappings = discover(self._config.streams, self._log)
        if not mappings:
            self._log.warning("No log files discovered, nothing to ship")
            return

        notifier = ChangeNotifier(self._log)
        for mapping in mappings:
            channel = self._dispatcher.add_stream(mapping.stream)
            handler = self._line_handler(channel)
            for path in mapping.files:
                tailer = FileTailer(
                    path,
                    self._shutdown,
                    callback=handler,
                    poll_interval=self._poll_interval,
                    rotation_interval=self._rotation_interval,
                    retry_interval=self._retry_interval,
                    log=self._log,
                )
                self._tailers.append(tailer)
                notifier.register(tailer)
                self._threads.append(threading.Thread(
                    target=tailer.run, name=f"tail:{path}", daemon=True,
                ))

        self._log.info("Tailing %d file(s) for %d stream(s)", len(self._tailers), len(mappings))
        for t in self._threads:
            t.start()
        if self._config.watch:
            notifier.start()

        try:
            self._run_dispatcher()
        finally:
            self._shutdown.set()
            for tailer in self._tailers:
                tailer.nudge()
            for t in self._threads:
                t.join(timeout=JOIN_TIMEOUT)
                if t.is_alive():
                    self._log.warning("Tailer thread %s did not stop in time", t.name)
            notifier.stop()
            self._finish()

    def run_stdin(self, stream=None):
        """Ship lines from a pipe to a single stream until EOF or shutdown."""
        target = self._stdin_stream()
        if target is None:
            self._log.error("Stdin mode needs --stream-id or a configured stream with a stream_id or url")
            return

        channel = self._dispatcher.add_stream(target)
        reader = StdinReader(
            stream if stream is not None else sys.stdin,
            self._shutdown,
            callback=self._line_handler(channel),
            on_eof=self._shutdown.set,
            log=self._log,
        )
        thread = threading.Thread(target=reader.run, name="stdin", daemon=True)
        self._log.info("Reading stdin for stream %r", target.name)
        thread.start()
        try:
            self._run_dispatcher()
        finally:
            self._shutdown.set()
            # A read blocked on an idle pipe cannot be interrupted; the thread is a daemon.
            thread.join(timeout=JOIN_TIMEOUT)
            self._finish()

    def _stdin_stream(self) -> StreamConfig | None:
        if self._config.stdin_stream_id:
            for stream in self._config.streams:
                if stream.stream_id == self._config.stdin_stream_id:
                    return stream
            return StreamConfig(name="stdin", stream_id=self._config.stdin_stream_id)
        for stream in self._config.streams:
            if stream.stream_id or stream.url:
                return stream
        return None

    def _run_dispatcher(self):
        reporter = None
        if self._config.metrics_interval > 0:
            reporter = MetricsReporter(
                self._metrics, self._config.metrics_interval, self._shutdown, log=self._log,
            )
            reporter.start()
        try:
            self._dispatcher.run()
        finally:
            if reporter:
                reporter.stop()

    def _finish(self):
        self._dispatcher.close()
        self._shipper.close()
        self._log.info("Agent stopped: %s", format_snapshot(self._metrics.snapshot()))

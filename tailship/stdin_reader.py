"""Reads log lines from a pipe (normally stdin) instead of tailing files."""

import logging
import threading

from tailship.models import LogLine

logger = logging.getLogger(__name__)

STDIN_SOURCE = "-"


class StdinReader:
    """Calls ``callback(LogLine)`` for each non-empty line until EOF or shutdown."""

    def __init__(self, stream, shutdown_event: threading.Event, callback=None,
                 on_eof=None, log: logging.Logger | None = None):
        self._stream = stream
        self._shutdown = shutdown_event
        self._callback = callback
        self._on_eof = on_eof
        self._log = log or logger
        self._lines = 0

    @property
    def lines(self) -> int:
        return self._lines

    def run(self):
        try:
            for raw in self._stream:
                if self._shutdown.is_set():
                    return
                text = raw.rstrip("\r\n")
                if not text:
                    continue
                self._lines += 1
                if self._callback:
                    self._callback(LogLine(source=STDIN_SOURCE, text=text))
        except (OSError, ValueError) as e:
            self._log.warning("Stopped reading stdin: %s", e)
        self._log.info("Reached end of input after %d line(s)", self._lines)
        if self._on_eof:
            self._on_eof()

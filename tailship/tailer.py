"""File tailer with rotation, truncation and disappearance handling."""

import logging
import os
import threading
import time
from enum import Enum

from tailship.models import LogLine

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2
ROTATION_CHECK_INTERVAL = 5.0
RETRY_INTERVAL = 5.0

# Lines read per pass before re-checking rotation and shutdown
MAX_LINES_PER_PASS = 1000


class TailState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class FileTailer:
    """Follows one file and calls ``callback(LogLine)`` for each appended line.

    Handles:
    - Start-up: seeks to the end, history is never sent
    - Rename rotation (device+inode change) and deletion: drains the old
      handle, then reopens the new file from its beginning
    - Copy-truncate rotation (file shrank below the read position): rereads
      from the start
    - Unreadable files: retried every ``retry_interval`` seconds, forever
    """

    def __init__(
        self,
        path: str,
        shutdown_event: threading.Event,
        callback=None,
        poll_interval: float = POLL_INTERVAL,
        rotation_interval: float = ROTATION_CHECK_INTERVAL,
        retry_interval: float = RETRY_INTERVAL,
        log: logging.Logger | None = None,
    ):
        self._path = path
        self._shutdown = shutdown_event
        self._callback = callback
        self._poll_interval = poll_interval
        self._rotation_interval = rotation_interval
        self._retry_interval = retry_interval
        self._log = log or logger

        self._file = None
        self._identity: tuple[int, int] | None = None
        self._partial = b""
        self._state = TailState.CLOSED
        self._reopen_from_start = False
        self._next_retry = 0.0
        self._next_rotation_check = 0.0
        self._lines_emitted = 0

        self._wake = threading.Event()
        self._rotation_requested = threading.Event()

    @property
    def path(self) -> str:
        return self._path

    @property
    def state(self) -> TailState:
        return self._state

    @property
    def lines_emitted(self) -> int:
        return self._lines_emitted

    def nudge(self, rotation: bool = False):
        """Wake the tailer early; with ``rotation`` also check identity now."""
        if rotation:
            self._rotation_requested.set()
        self._wake.set()

    def run(self):
        """Main tailing loop; blocks until shutdown_event is set."""
        now = time.monotonic()
        self._next_rotation_check = now + self._rotation_interval
        if not self._open(seek_end=True):
            self._enter_reconnecting(now)

        try:
            while not self._shutdown.is_set():
                now = time.monotonic()
                rotation_requested = self._rotation_requested.is_set()
                if rotation_requested or now >= self._next_rotation_check:
                    self._rotation_requested.clear()
                    self._next_rotation_check = now + self._rotation_interval
                    self._check_rotation(now)

                if self._state is TailState.RECONNECTING:
                    if rotation_requested or now >= self._next_retry:
                        self._reconnect(now)
                    if self._state is TailState.RECONNECTING:
                        self._sleep(self._poll_interval)
                    continue

                if not self._read_available():
                    self._sleep(self._poll_interval)
        finally:
            self._close()
            self._state = TailState.TERMINATED
            self._log.debug("Tailer for %s terminated", self._path)

    # Internal helpers

    def _sleep(self, timeout: float):
        self._wake.wait(timeout)
        self._wake.clear()

    def _open(self, seek_end: bool) -> bool:
        """Open the file, record its identity and optionally seek to the end."""
        try:
            f = open(self._path, "rb")
        except OSError as e:
            self._log.warning("Cannot open %s: %s", self._path, e)
            return False
        st = os.fstat(f.fileno())
        if seek_end:
            f.seek(0, os.SEEK_END)
        self._file = f
        self._identity = (st.st_dev, st.st_ino)
        self._partial = b""
        self._state = TailState.OPEN
        self._log.debug("Opened %s (inode=%d, offset=%d)", self._path, st.st_ino, f.tell())
        return True

    def _discard_partial(self, reason: str):
        if self._partial:
            self._log.warning(
                "Discarding unterminated line of %d bytes from %s on %s: %r",
                len(self._partial), self._path, reason, self._partial[:200],
            )
            self._partial = b""

    def _close(self):
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                self._log.debug("Error closing %s: %s", self._path, e)
            self._file = None
        self._partial = b""

    def _enter_reconnecting(self, now: float):
        self._state = TailState.RECONNECTING
        self._next_retry = now + self._retry_interval
        self._log.info("Tailer for %s reconnecting every %.1fs", self._path, self._retry_interval)

    def _reconnect(self, now: float):
        if self._open(seek_end=not self._reopen_from_start):
            self._log.info("Reopened %s", self._path)
            self._reopen_from_start = False
        else:
            self._next_retry = now + self._retry_interval

    def _check_rotation(self, now: float):
        """Detect rename/delete rotation and copy-truncate on an open file."""
        if self._state is not TailState.OPEN:
            return
        try:
            st = os.stat(self._path)
        except FileNotFoundError:
            st = None
        except OSError as e:
            self._log.debug("Cannot stat %s: %s", self._path, e)
            return

        if st is None or (st.st_dev, st.st_ino) != self._identity:
            reason = "disappeared" if st is None else "rotated"
            self._log.info("File %s %s, draining old handle", self._path, reason)
            self._read_available(limit=None)
            self._discard_partial("rotation")
            self._close()
            self._reopen_from_start = True
            self._enter_reconnecting(now)
            # The replacement usually exists already; try it right away.
            if st is not None:
                self._reconnect(now)
            return

        if st.st_size < self._file.tell():
            self._log.info("File truncation detected for %s", self._path)
            self._discard_partial("truncation")
            self._file.seek(0)

    def _read_available(self, limit: int | None = MAX_LINES_PER_PASS) -> bool:
        """Emit complete lines up to EOF (or ``limit``). Returns True if data was read."""
        got_data = False
        count = 0
        while limit is None or count < limit:
            if self._shutdown.is_set():
                break
            try:
                chunk = self._file.readline()
            except OSError as e:
                self._log.warning("Read error on %s: %s", self._path, e)
                self._close()
                self._enter_reconnecting(time.monotonic())
                break
            if not chunk:
                break
            got_data = True
            if not chunk.endswith(b"\n"):
                # Writer has not finished the line yet
                self._partial += chunk
                break
            data = self._partial + chunk
            self._partial = b""
            self._emit(data)
            count += 1
        return got_data

    def _emit(self, data: bytes):
        text = data.decode("utf-8", errors="replace").rstrip("\r\n")
        if not text or self._shutdown.is_set():
            return
        self._lines_emitted += 1
        if self._callback is None:
            return
        try:
            self._callback(LogLine(source=self._path, text=text))
        except Exception:
            self._log.exception("Line callback failed for %s", self._path)

"""ChangeNotifier: watchdog handler that wakes tailers when their files change."""

import logging
import os

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class ChangeNotifier(FileSystemEventHandler):
    """Routes filesystem events to the tailers following the affected paths.

    Modifications wake a tailer early; create/move/delete also ask it for an
    immediate rotation check. Tailers keep polling, so a missing or failed
    observer only costs latency.
    """

    def __init__(self, log: logging.Logger | None = None):
        super().__init__()
        self._log = log or logger
        self._tailers: dict[str, list] = {}
        self._observer = None

    def register(self, tailer):
        path = os.path.abspath(tailer.path)
        self._tailers.setdefault(path, []).append(tailer)

    def get_watched_dirs(self) -> set[str]:
        """Unique parent directories of watched files (for Observer scheduling)."""
        return {os.path.dirname(p) for p in self._tailers}

    def _notify(self, raw_path, rotation: bool):
        path = os.path.abspath(os.fsdecode(raw_path))
        for tailer in self._tailers.get(path, ()):
            tailer.nudge(rotation=rotation)

    def on_modified(self, event):
        if not event.is_directory:
            self._notify(event.src_path, rotation=False)

    def on_created(self, event):
        if not event.is_directory:
            self._notify(event.src_path, rotation=True)

    def on_deleted(self, event):
        if not event.is_directory:
            self._notify(event.src_path, rotation=True)

    def on_moved(self, event):
        if not event.is_directory:
            self._notify(event.src_path, rotation=True)
            self._notify(event.dest_path, rotation=True)

    def start(self) -> bool:
        """Start the observer. Returns False (polling only) if it cannot run."""
        if not self._tailers:
            return False
        observer = Observer()
        try:
            for dir_path in self.get_watched_dirs():
                observer.schedule(self, dir_path, recursive=False)
                self._log.debug("Watching directory: %s", dir_path)
            observer.start()
        except OSError as e:
            self._log.warning("File change notifications unavailable, polling only: %s", e)
            return False
        self._observer = observer
        return True

    def stop(self):
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

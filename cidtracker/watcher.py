"""DirectoryWatcher: watchdog event handler that discovers log files.

The watcher only decides which paths are tailed. Reading new bytes is the
tailers' job, so modify events on known paths are ignored.
"""

import fnmatch
import logging
import os
import threading
import time

from watchdog.events import FileSystemEventHandler

from cidtracker.config import LogSource

logger = logging.getLogger(__name__)


def matches_source(path: str, source: LogSource) -> bool:
    """True if the file's basename matches one of the source's glob patterns."""
    name = os.path.basename(path)
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in source.patterns)


def walk_source(source: LogSource) -> list[str]:
    """All existing matching files under the source directory, sorted."""
    found = []
    for dirpath, _dirnames, filenames in os.walk(source.path):
        for name in filenames:
            path = os.path.abspath(os.path.join(dirpath, name))
            if matches_source(path, source):
                found.append(path)
    return sorted(found)


class ErrorRateMonitor:
    """Detects a sustained error rate: more than ``max_per_second`` errors in
    each of the last ``sustain_seconds`` one-second buckets."""

    def __init__(self, max_per_second: int = 10, sustain_seconds: int = 5,
                 clock=time.monotonic):
        self._max = max_per_second
        self._sustain = sustain_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[int, int] = {}
        self._total = 0

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def record(self) -> bool:
        """Count one error. Returns True once the rate is sustained."""
        with self._lock:
            now = int(self._clock())
            self._buckets[now] = self._buckets.get(now, 0) + 1
            self._total += 1
            for second in [s for s in self._buckets if s <= now - self._sustain]:
                del self._buckets[second]
            return all(
                self._buckets.get(now - i, 0) > self._max for i in range(self._sustain)
            )


class DirectoryWatcher(FileSystemEventHandler):
    """Maps filesystem events for one log source onto driver calls.

    The driver must provide ``track(path, from_end)``, ``untrack(path)``,
    ``is_tracked(path)`` and ``report_watcher_error(exc)``.
    """

    def __init__(self, source: LogSource, driver):
        super().__init__()
        self._source = source
        self._driver = driver

    @property
    def source(self) -> LogSource:
        return self._source

    def _wanted(self, event, path: str | None = None) -> bool:
        if event.is_directory:
            return False
        return matches_source(path or event.src_path, self._source)

    def _attach(self, path: str):
        # Files appearing after start-up are new content: read from byte 0.
        self._driver.track(path, from_end=False)

    def _safely(self, action, path: str):
        # An exception escaping a handler would kill the observer thread.
        try:
            action(os.path.abspath(path))
        except Exception as e:
            logger.warning("Watcher failed handling %s: %s", path, e)
            self._driver.report_watcher_error(e)

    def on_created(self, event):
        if self._wanted(event):
            logger.debug("New log file detected: %s", event.src_path)
            self._safely(self._attach, event.src_path)

    def on_modified(self, event):
        if not self._wanted(event):
            return
        # Events may be coalesced; a write can be the first sign of a file.
        path = os.path.abspath(event.src_path)
        if not self._driver.is_tracked(path):
            self._safely(self._attach, path)

    def on_deleted(self, event):
        if self._wanted(event):
            logger.debug("Log file removed: %s", event.src_path)
            self._safely(self._driver.untrack, event.src_path)

    def on_moved(self, event):
        if event.is_directory:
            return
        if matches_source(event.src_path, self._source):
            self._safely(self._driver.untrack, event.src_path)
        if matches_source(event.dest_path, self._source):
            self._safely(self._attach, event.dest_path)

"""Pipeline driver: owns the tail registry, the line queue, and record emission.

Threads:
- one FileTailer per tracked file (producers on the line queue)
- the watchdog Observer, which calls track/untrack through DirectoryWatcher
- the processing thread (line queue -> extractor -> output queue)
- the MetricsReporter

Shutdown drains the line queue for at most DRAIN_TIMEOUT seconds, then
closes the output queue with a ``None`` sentinel.
"""

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass

from watchdog.observers import Observer

from cidtracker.config import Config
from cidtracker.errors import ConfigError, FileOpenError, WatcherError
from cidtracker.extractor import CIDExtractor
from cidtracker.metrics import Metrics, MetricsReporter, format_snapshot
from cidtracker.models import CIDRecord, LogLine
from cidtracker.tailer import FileTailer
from cidtracker.uuid_validator import UUIDValidator
from cidtracker.watcher import DirectoryWatcher, ErrorRateMonitor, walk_source

logger = logging.getLogger(__name__)

DRAIN_TIMEOUT = 2.0
_QUEUE_WAIT = 0.1


@dataclass
class TailState:
    path: str
    tailer: FileTailer
    alive: bool = True

    @property
    def offset(self) -> int:
        return self.tailer.offset


class Pipeline:
    def __init__(
        self,
        config: Config,
        output: queue.Queue | None = None,
        metrics: Metrics | None = None,
        observer_factory=Observer,
        error_monitor: ErrorRateMonitor | None = None,
    ):
        self._config = config
        self._lines: queue.Queue = queue.Queue(maxsize=config.buffer_size)
        self._output: queue.Queue = output if output is not None else queue.Queue(
            maxsize=config.buffer_size)
        self._metrics = metrics or Metrics()
        self._extractor = CIDExtractor(
            config.cid_patterns, UUIDValidator(enforce_u5=config.enable_u5_only),
        )
        self._cancel = threading.Event()
        self._deadline = 0.0

        self._lock = threading.Lock()
        self._registry: dict[str, TailState] = {}

        self._observer_factory = observer_factory
        self._observer = None
        self._handlers = [DirectoryWatcher(s, self) for s in config.active_sources]
        self._watcher_errors = error_monitor or ErrorRateMonitor()
        self._fatal: WatcherError | None = None

        self._worker: threading.Thread | None = None
        self._reporter = MetricsReporter(self._metrics, config.metrics_interval, self._cancel)
        self._started = False
        self._stopped = False
        self._dropped = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def output(self) -> queue.Queue:
        return self._output

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def dropped(self) -> int:
        """Records abandoned because the drain deadline passed."""
        return self._dropped

    @property
    def active_paths(self) -> list[str]:
        with self._lock:
            return sorted(self._registry)

    def tail_state(self, path: str) -> TailState | None:
        with self._lock:
            return self._registry.get(os.path.abspath(path))

    def is_tracked(self, path: str) -> bool:
        with self._lock:
            return os.path.abspath(path) in self._registry

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Walk existing files, attach the watcher, start processing.

        Raises ConfigError for a missing directory and WatcherError if the
        observer cannot be attached.
        """
        sources = self._config.active_sources
        if not sources:
            raise ConfigError("no active log sources configured")
        for source in sources:
            if not os.path.isdir(source.path):
                raise ConfigError(f"log path does not exist: {source.path}")

        # Walk before watching so nothing created afterwards is missed.
        for source in sources:
            for path in walk_source(source):
                self.track(path, from_end=True)

        self._observer = self._attach_observer()
        self._worker = threading.Thread(target=self._run, name="pipeline", daemon=True)
        self._worker.start()
        self._reporter.start()
        self._started = True
        logger.info("Started monitoring %s (%d file(s))",
                    ", ".join(s.path for s in sources), len(self.active_paths))

    def _attach_observer(self):
        observer = self._observer_factory()
        try:
            for handler in self._handlers:
                observer.schedule(handler, handler.source.path, recursive=True)
            observer.start()
        except OSError as e:
            raise WatcherError(f"failed to attach watcher: {e}") from e
        return observer

    def stop(self, timeout: float = DRAIN_TIMEOUT):
        """Cancel everything, drain queued lines within ``timeout``, close output."""
        if self._stopped:
            return
        self._stopped = True
        self._deadline = time.monotonic() + timeout
        self._cancel.set()
        logger.info("Stopping pipeline...")

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)

        with self._lock:
            states = list(self._registry.values())
            self._registry.clear()
        for state in states:
            state.alive = False
            state.tailer.stop()

        if self._worker is not None:
            self._worker.join(timeout=max(self._deadline - time.monotonic(), 0) + 0.5)
        else:
            self._close_output()

        for state in states:
            if state.tailer.join(timeout=1.0):
                state.tailer.close()
            else:
                logger.warning("Tailer for %s did not exit in time", state.path)

        if self._started:
            self._reporter.stop()
        if self._dropped:
            logger.warning("Dropped %d record(s) at shutdown", self._dropped)
        logger.info("Final metrics: %s", format_snapshot(self._metrics.snapshot()))

    # ------------------------------------------------------------------
    # Registry (called from the walk and from the watcher thread)
    # ------------------------------------------------------------------

    def track(self, path: str, from_end: bool = True) -> bool:
        """Start tailing ``path``. Returns False if already tracked or unopenable.

        ``from_end`` attaches at the current size (start-up walk); otherwise
        the file is read from byte 0.
        """
        path = os.path.abspath(path)
        if self._cancel.is_set() or self.is_tracked(path):
            return False

        tailer = FileTailer(
            path,
            self._lines,
            self._cancel,
            start_offset=None if from_end else 0,
            poll_interval=self._config.poll_interval,
        )
        try:
            tailer.open()
        except FileOpenError as e:
            logger.warning("Failed to open log file: %s", e)
            return False

        with self._lock:
            if path in self._registry or self._cancel.is_set():
                tailer.close()
                return False
            self._registry[path] = TailState(path=path, tailer=tailer)
            tailer.start()

        logger.info("Started monitoring log file %s at offset %d", path, tailer.offset)
        return True

    def untrack(self, path: str) -> bool:
        """Stop tailing ``path`` and close its handle. Queued lines stay valid."""
        path = os.path.abspath(path)
        with self._lock:
            state = self._registry.pop(path, None)
        if state is None:
            return False

        state.alive = False
        state.tailer.stop()
        if state.tailer.join(timeout=self._config.poll_interval * 5 + 1.0):
            state.tailer.close()
        else:
            logger.warning("Tailer for %s did not exit in time", path)
        logger.info("Stopped monitoring log file %s", path)
        return True

    # ------------------------------------------------------------------
    # Watcher health
    # ------------------------------------------------------------------

    def report_watcher_error(self, exc: Exception):
        self._metrics.increment_errors()
        if self._watcher_errors.record() and self._fatal is None:
            self._fatal = WatcherError(f"sustained watcher failure rate, last error: {exc}")
            logger.error("%s", self._fatal)

    def check_health(self):
        """Called periodically from the main thread. Raises WatcherError when fatal."""
        if self._fatal is not None:
            raise self._fatal
        if self._cancel.is_set() or self._observer is None:
            return
        if not self._observer.is_alive():
            logger.warning("Watcher thread died, restarting")
            self.report_watcher_error(WatcherError("observer thread died"))
            try:
                self._observer = self._attach_observer()
            except WatcherError as e:
                logger.warning("%s", e)
                self.report_watcher_error(e)
        if self._fatal is not None:
            raise self._fatal

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_line(self, line: LogLine) -> list[CIDRecord]:
        """Run one line through the extractor and update the counters."""
        self._metrics.increment_processed()
        matches = self._extractor.extract_line(line)
        if not matches:
            return []
        self._metrics.increment_extracted()

        records = []
        for match in matches:
            if match.malformed:
                self._metrics.increment_errors(len(match.malformed))
            record = CIDRecord.from_match(match)
            if record.is_valid:
                self._metrics.increment_valid()
            else:
                self._metrics.increment_invalid()
            records.append(record)
        return records

    def _run(self):
        while not self._cancel.is_set():
            try:
                line = self._lines.get(timeout=_QUEUE_WAIT)
            except queue.Empty:
                continue
            self._handle(line)
        self._drain()
        self._close_output()

    def _handle(self, line: LogLine):
        for record in self.process_line(line):
            if not self._emit(record):
                self._dropped += 1

    def _emit(self, record: CIDRecord) -> bool:
        """Put a record on the output queue, bounded by the drain deadline once cancelled."""
        while True:
            timeout = _QUEUE_WAIT
            if self._cancel.is_set():
                remaining = self._deadline - time.monotonic()
                if remaining <= 0:
                    return False
                timeout = min(remaining, _QUEUE_WAIT)
            try:
                self._output.put(record, timeout=timeout)
                return True
            except queue.Full:
                continue

    def _drain(self):
        drained = 0
        while time.monotonic() < self._deadline:
            try:
                line = self._lines.get_nowait()
            except queue.Empty:
                break
            self._handle(line)
            drained += 1
        left = self._lines.qsize()
        logger.debug("Drained %d queued line(s), %d left behind", drained, left)
        if left:
            logger.warning("Drain deadline reached, dropping %d queued line(s)", left)

    def _close_output(self):
        remaining = max(self._deadline - time.monotonic(), _QUEUE_WAIT)
        try:
            self._output.put(None, timeout=remaining)
        except queue.Full:
            logger.warning("Output queue full at shutdown, consumer will not see close")

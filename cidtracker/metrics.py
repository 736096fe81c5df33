"""Thread-safe pipeline counters and periodic reporting."""

import logging
import threading
import time

logger = logging.getLogger(__name__)

COUNTERS = ("processed_lines", "extracted_cids", "valid_cids", "invalid_cids", "errors")


class Metrics:
    """Five monotonically non-decreasing counters behind one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(COUNTERS, 0)
        self._start_time = time.monotonic()

    def _add(self, name: str, amount: int):
        if amount < 0:
            raise ValueError("counters only move forward")
        with self._lock:
            self._counts[name] += amount

    def increment_processed(self, amount: int = 1):
        self._add("processed_lines", amount)

    def increment_extracted(self, amount: int = 1):
        self._add("extracted_cids", amount)

    def increment_valid(self, amount: int = 1):
        self._add("valid_cids", amount)

    def increment_invalid(self, amount: int = 1):
        self._add("invalid_cids", amount)

    def increment_errors(self, amount: int = 1):
        self._add("errors", amount)

    def snapshot(self) -> dict:
        """Consistent point-in-time copy of all five counters."""
        with self._lock:
            snap = dict(self._counts)
        snap["uptime_seconds"] = round(time.monotonic() - self._start_time, 1)
        return snap


def format_snapshot(snap: dict) -> str:
    return (
        f"processed={snap['processed_lines']} "
        f"extracted={snap['extracted_cids']} "
        f"valid={snap['valid_cids']} "
        f"invalid={snap['invalid_cids']} "
        f"errors={snap['errors']}"
    )


class MetricsReporter:
    """Background thread that periodically logs a metrics snapshot."""

    def __init__(
        self,
        metrics: Metrics,
        interval: float,
        shutdown_event: threading.Event,
    ):
        self._metrics = metrics
        self._interval = interval
        self._shutdown = shutdown_event
        self._thread: threading.Thread | None = None

    def start(self):
        self._thread = threading.Thread(target=self._report_loop, name="metrics", daemon=True)
        self._thread.start()

    def stop(self):
        """Wait for the reporter to exit. The shutdown event must already be set."""
        if self._thread:
            self._thread.join(timeout=5)

    def _report_loop(self):
        while not self._shutdown.is_set():
            self._shutdown.wait(self._interval)
            if self._shutdown.is_set():
                break
            logger.info("Pipeline metrics: %s", format_snapshot(self._metrics.snapshot()))

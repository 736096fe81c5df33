"""Record formatting and the stdout sink writer."""

import json
import logging
import queue
import sys
import threading
import time

from cidtracker.errors import ConfigError
from cidtracker.models import CIDRecord, format_rfc3339

logger = logging.getLogger(__name__)


def format_json(record: CIDRecord) -> str:
    """One compact NDJSON line (no trailing newline)."""
    return json.dumps(record.to_dict(), separators=(",", ":"))


def format_structured(record: CIDRecord) -> str:
    """``[RFC3339] CID:<cid> FILE:<basename>``"""
    return f"[{format_rfc3339(record.timestamp, fractional=False)}] CID:{record.cid} FILE:{record.basename}"


_FORMATTERS = {
    "json": format_json,
    "structured": format_structured,
}


def get_formatter(name: str):
    try:
        return _FORMATTERS[name]
    except KeyError:
        raise ConfigError(f"unknown output format {name!r}") from None


class OutputWriter(threading.Thread):
    """Consumer thread that drains the record queue into a text stream.

    A ``None`` on the queue closes the writer.
    """

    def __init__(self, q: queue.Queue, output_format: str = "json", stream=None,
                 flush_interval: float = 5.0):
        super().__init__(name="output-writer", daemon=True)
        self._queue = q
        self._format = get_formatter(output_format)
        self._stream = stream if stream is not None else sys.stdout
        self._flush_interval = flush_interval
        self._last_flush = time.monotonic()
        self._written = 0

    @property
    def written(self) -> int:
        return self._written

    def _flush(self):
        self._stream.flush()
        self._last_flush = time.monotonic()

    def run(self):
        try:
            while True:
                record = self._queue.get()
                if record is None:
                    break
                self._stream.write(self._format(record) + "\n")
                self._written += 1
                if self._queue.empty() or time.monotonic() - self._last_flush >= self._flush_interval:
                    self._flush()
            self._flush()
        except BrokenPipeError:
            logger.info("Output stream closed by reader, writer stopping")

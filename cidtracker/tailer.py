"""FileTailer: follows one append-only log file from a byte offset.

Handles:
- Partial trailing lines (held until the newline arrives)
- File truncation (offset reset to the new beginning)
- Backpressure (blocks on a full queue instead of dropping lines)

Rotation by rename is not followed here; the directory watcher sees it as
remove + create and starts a fresh tailer.
"""

import logging
import os
import queue
import threading

from cidtracker.errors import FileOpenError, ReadError
from cidtracker.models import LogLine, utc_now

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024


class FileTailer:
    def __init__(
        self,
        path: str,
        out_queue: queue.Queue,
        cancel_event: threading.Event,
        start_offset: int | None = None,
        poll_interval: float = 0.1,
    ):
        self._path = os.path.abspath(path)
        self._queue = out_queue
        self._cancel = cancel_event
        self._stop_event = threading.Event()
        self._start_offset = start_offset
        self._poll_interval = poll_interval
        self._file = None
        self._offset = 0
        self._partial = b""
        self._lines_read = 0
        self._thread: threading.Thread | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def offset(self) -> int:
        """Position from which the next read will occur."""
        return self._offset

    @property
    def lines_read(self) -> int:
        return self._lines_read

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set() or self._cancel.is_set()

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def open(self):
        """Open the file and seek to the start offset (end of file by default)."""
        try:
            fh = open(self._path, "rb")
        except OSError as e:
            raise FileOpenError(self._path, e.strerror or str(e)) from e

        try:
            if self._start_offset is None:
                offset = os.fstat(fh.fileno()).st_size
            else:
                offset = self._start_offset
            fh.seek(offset)
        except OSError as e:
            fh.close()
            raise FileOpenError(self._path, e.strerror or str(e)) from e

        self._file = fh
        self._offset = offset
        self._partial = b""
        logger.debug("Opened %s at offset %d", self._path, offset)

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def start(self):
        """Open the file (if needed) and tail it on a background thread."""
        if self._file is None:
            self.open()
        self._thread = threading.Thread(
            target=self.run, name=f"tail:{os.path.basename(self._path)}", daemon=True,
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the tail thread. Returns True if it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self):
        """Main tailing loop. Blocks until stopped, cancelled, or a hard error."""
        try:
            if self._file is None:
                self.open()
            while not self.stopped:
                try:
                    self.poll_once()
                except ReadError as e:
                    logger.warning("Read error on %s: %s", self._path, e)
                if self.stopped:
                    break
                self._stop_event.wait(self._poll_interval)
        except FileOpenError as e:
            logger.warning("%s", e)
        finally:
            self.close()
            logger.debug("Tailer for %s exited after %d lines", self._path, self._lines_read)

    def poll_once(self) -> int:
        """Read everything appended since the last call. Returns lines emitted."""
        if self._file is None:
            return 0
        self._check_truncation()

        emitted = 0
        while not self.stopped:
            try:
                data = self._file.read(READ_SIZE)
            except OSError as e:
                raise ReadError(f"read failed: {e}") from e
            except ValueError:
                self._handle_closed()
                return emitted
            if not data:
                break
            self._offset += len(data)

            *lines, self._partial = (self._partial + data).split(b"\n")
            for raw in lines:
                if raw.endswith(b"\r"):
                    raw = raw[:-1]
                line = LogLine(
                    source_path=self._path,
                    read_at=utc_now(),
                    text=raw.decode("utf-8", errors="replace"),
                )
                if not self._put(line):
                    return emitted
                emitted += 1
                self._lines_read += 1
        return emitted

    def _put(self, line: LogLine) -> bool:
        """Block while the queue is full, staying responsive to stop/cancel."""
        while not self.stopped:
            try:
                self._queue.put(line, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _handle_closed(self):
        # Handle closed underneath us; nothing more can be read from it.
        logger.info("Handle for %s closed, tailer exiting", self._path)
        self._stop_event.set()

    def _check_truncation(self):
        try:
            size = os.fstat(self._file.fileno()).st_size
        except OSError as e:
            raise ReadError(f"stat failed: {e}") from e
        except ValueError:
            self._handle_closed()
            return
        if size < self._offset:
            logger.info("File truncation detected for %s (size %d < offset %d)",
                        self._path, size, self._offset)
            self._file.seek(0)
            self._offset = 0
            self._partial = b""

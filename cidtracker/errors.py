"""Error taxonomy for the CID tracker.

Path-scoped failures (FileOpenError, ReadError) are recovered where they
happen. Process-scoped failures (ConfigError, sustained WatcherError) reach
main.py and decide the exit code.
"""


class CIDTrackerError(Exception):
    """Base class for all tracker errors."""


class ConfigError(CIDTrackerError):
    """Missing directory, invalid regex, or unparseable config. Fatal at startup."""


class WatcherError(CIDTrackerError):
    """Filesystem notification failure."""


class FileOpenError(CIDTrackerError):
    """A log file could not be opened for tailing."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"cannot open {path}: {reason}")
        self.path = path
        self.reason = reason


class ReadError(CIDTrackerError):
    """A tailed file could not be read."""

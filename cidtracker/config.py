"""Configuration loading from an optional config file, env vars, and CLI args.

Precedence, lowest to highest: defaults, config file, env vars, CLI flags.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field

import yaml

from cidtracker.errors import ConfigError

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "structured")

DEFAULT_LOG_PATH = "/var/log/app"
DEFAULT_SUFFIX = ".log"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class CIDPattern:
    name: str
    regex_string: str
    regex: re.Pattern
    uuid_group: int = 1
    enabled: bool = True

    @classmethod
    def compile(cls, name: str, regex_string: str, uuid_group: int = 1,
                enabled: bool = True) -> "CIDPattern":
        try:
            compiled = re.compile(regex_string)
        except re.error as e:
            raise ConfigError(f"invalid regex pattern '{name}': {e}") from e
        if uuid_group > compiled.groups:
            raise ConfigError(
                f"pattern '{name}' has no capture group {uuid_group}"
            )
        return cls(name=name, regex_string=regex_string, regex=compiled,
                   uuid_group=uuid_group, enabled=enabled)


DEFAULT_CID_PATTERNS = (
    ("bracket_cid", r"CID\[(\S+)\]"),
    ("standard_cid", r"CID\s*[=:]\s*([0-9a-fA-F-]{36})"),
    ("json_cid", r'"cid"\s*:\s*"([0-9a-fA-F-]{36})"'),
)


def default_cid_patterns() -> list[CIDPattern]:
    return [CIDPattern.compile(name, regex) for name, regex in DEFAULT_CID_PATTERNS]


@dataclass(frozen=True)
class LogSource:
    path: str
    name: str = "application"
    patterns: list[str] = field(default_factory=lambda: ["*" + DEFAULT_SUFFIX])
    active: bool = True
    description: str = ""


def source_for_path(path: str, suffix: str = DEFAULT_SUFFIX) -> LogSource:
    return LogSource(
        path=path,
        name="application",
        patterns=["*" + suffix],
        active=True,
        description="Main application logs",
    )


@dataclass(frozen=True)
class Config:
    log_sources: list[LogSource] = field(
        default_factory=lambda: [source_for_path(DEFAULT_LOG_PATH)]
    )
    cid_patterns: list[CIDPattern] = field(default_factory=default_cid_patterns)
    output_format: str = "json"
    buffer_size: int = 1000
    flush_interval: float = 5.0
    poll_interval: float = 0.1
    enable_u5_only: bool = True
    correlation_ttl: float = 3600.0
    log_level: str = "info"
    metrics_interval: float = 30.0

    @property
    def active_sources(self) -> list[LogSource]:
        return [s for s in self.log_sources if s.active]


def parse_duration(value) -> float:
    """Convert a duration to seconds.

    Strings use Go-style units ("100ms", "1m30s"); a bare number string is
    seconds. Numbers are nanoseconds, as stored in the JSON config format.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return value / 1e9
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def load_config_file(path: str | None) -> dict:
    """Read a JSON (or YAML) config file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"failed to parse config {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain an object at top level")
    logger.info("Loaded config from %s", path)
    return data


def _sources_from_file(entries: list) -> list[LogSource]:
    sources = []
    for entry in entries:
        if "path" not in entry:
            raise ConfigError("log source is missing 'path'")
        sources.append(LogSource(
            path=entry["path"],
            name=entry.get("name", "application"),
            patterns=list(entry.get("patterns") or ["*" + DEFAULT_SUFFIX]),
            active=entry.get("active", True),
            description=entry.get("description", ""),
        ))
    return sources


def _patterns_from_file(entries: list) -> list[CIDPattern]:
    patterns = []
    for entry in entries:
        try:
            name = entry["name"]
            regex_string = entry["regex_string"]
        except KeyError as e:
            raise ConfigError(f"CID pattern is missing {e}") from e
        patterns.append(CIDPattern.compile(
            name,
            regex_string,
            uuid_group=int(entry.get("uuid_group", 1)),
            enabled=entry.get("enabled", True),
        ))
    return patterns


def _from_file(data: dict) -> dict:
    kwargs: dict = {}
    if "log_sources" in data:
        kwargs["log_sources"] = _sources_from_file(data["log_sources"] or [])
    if "cid_patterns" in data:
        kwargs["cid_patterns"] = _patterns_from_file(data["cid_patterns"] or [])
    if "output_format" in data:
        kwargs["output_format"] = data["output_format"]
    if "buffer_size" in data:
        kwargs["buffer_size"] = int(data["buffer_size"])
    if "flush_interval" in data:
        kwargs["flush_interval"] = parse_duration(data["flush_interval"])
    if "watch_interval" in data:
        kwargs["poll_interval"] = parse_duration(data["watch_interval"])
    if "enable_u5_only" in data:
        kwargs["enable_u5_only"] = bool(data["enable_u5_only"])
    if "correlation_ttl" in data:
        kwargs["correlation_ttl"] = parse_duration(data["correlation_ttl"])
    if "log_level" in data:
        kwargs["log_level"] = str(data["log_level"])
    return kwargs


def load_config(cli_args=None, file_data: dict | None = None,
                environ=None) -> Config:
    """Build Config from parsed CLI args, config file data, and env vars.

    ``cli_args`` attributes left at None fall through to lower layers.
    """
    if environ is None:
        environ = os.environ
    kwargs = _from_file(file_data or {})

    log_path = environ.get("CID_LOG_PATH")
    suffix = environ.get("CID_SUFFIX", DEFAULT_SUFFIX)
    if "CID_OUTPUT_FORMAT" in environ:
        kwargs["output_format"] = environ["CID_OUTPUT_FORMAT"]
    if "CID_POLL_INTERVAL" in environ:
        kwargs["poll_interval"] = parse_duration(environ["CID_POLL_INTERVAL"])
    if "CID_BUFFER_SIZE" in environ:
        kwargs["buffer_size"] = int(environ["CID_BUFFER_SIZE"])
    if "CID_METRICS_INTERVAL" in environ:
        kwargs["metrics_interval"] = parse_duration(environ["CID_METRICS_INTERVAL"])
    if "CID_ENABLE_U5_ONLY" in environ:
        kwargs["enable_u5_only"] = _parse_bool(environ["CID_ENABLE_U5_ONLY"])

    if cli_args is not None:
        if getattr(cli_args, "log_path", None):
            log_path = cli_args.log_path
        if getattr(cli_args, "suffix", None):
            suffix = cli_args.suffix
        if getattr(cli_args, "output", None):
            kwargs["output_format"] = cli_args.output
        if getattr(cli_args, "poll_interval", None):
            kwargs["poll_interval"] = parse_duration(cli_args.poll_interval)
        if getattr(cli_args, "buffer_size", None) is not None:
            kwargs["buffer_size"] = cli_args.buffer_size
        if getattr(cli_args, "metrics_interval", None):
            kwargs["metrics_interval"] = parse_duration(cli_args.metrics_interval)
        if getattr(cli_args, "verbose", False):
            kwargs["log_level"] = "debug"

    if log_path:
        kwargs["log_sources"] = [source_for_path(log_path, suffix)]
    elif "log_sources" not in kwargs:
        kwargs["log_sources"] = [source_for_path(DEFAULT_LOG_PATH, suffix)]

    if kwargs.get("output_format", "json") not in OUTPUT_FORMATS:
        raise ConfigError(
            f"unknown output format {kwargs['output_format']!r}, "
            f"expected one of {', '.join(OUTPUT_FORMATS)}"
        )
    if kwargs.get("buffer_size", 1) <= 0:
        kwargs["buffer_size"] = Config.buffer_size
    if kwargs.get("flush_interval", 1) <= 0:
        kwargs["flush_interval"] = Config.flush_interval
    if kwargs.get("poll_interval", 1) <= 0:
        raise ConfigError("poll interval must be positive")

    return Config(**kwargs)

"""Data model for the tailing-and-extraction pipeline."""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Variant(str, Enum):
    NCS = "NCS"
    RFC4122 = "RFC4122"
    MICROSOFT = "Microsoft"
    RESERVED = "Reserved"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime, fractional: bool = True) -> str:
    """Render an aware datetime as RFC 3339 in UTC with a ``Z`` suffix."""
    dt = dt.astimezone(timezone.utc)
    if fractional:
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_rfc3339(value: str) -> datetime:
    """Inverse of format_rfc3339. Accepts ``Z`` or a numeric offset."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).astimezone(timezone.utc)


@dataclass(frozen=True)
class LogLine:
    source_path: str     # absolute
    read_at: datetime    # UTC
    text: str            # without the line terminator


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    version: int = 0
    variant: Variant | None = None
    error: str | None = None

    @property
    def is_u5(self) -> bool:
        return self.version == 5 and self.variant == Variant.RFC4122


@dataclass(frozen=True)
class UUIDMatch:
    value: str           # canonical lower-case dashed form
    version: int
    variant: Variant
    extracted_at: datetime = field(default_factory=utc_now)

    @property
    def is_u5(self) -> bool:
        return self.version == 5 and self.variant == Variant.RFC4122


@dataclass
class CIDMatch:
    cid: str
    log_line: LogLine
    uuids: list[UUIDMatch] = field(default_factory=list)
    extracted_at: datetime = field(default_factory=utc_now)
    pattern: str = ""
    start: int = 0
    # UUID-shaped CID values that failed to parse
    malformed: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return any(u.is_u5 for u in self.uuids)

    @property
    def first_u5(self) -> str:
        for u in self.uuids:
            if u.is_u5:
                return u.value
        return ""


@dataclass(frozen=True)
class CIDRecord:
    """One emitted extraction. This is the pipeline's output contract."""

    cid: str
    uuid: str
    timestamp: datetime
    source_path: str
    raw_log_line: str
    is_valid: bool
    extracted_at: datetime

    @property
    def basename(self) -> str:
        return os.path.basename(self.source_path)

    def to_dict(self) -> dict:
        return {
            "cid": self.cid,
            "uuid": self.uuid,
            "timestamp": format_rfc3339(self.timestamp),
            "log_file": self.source_path,
            "raw_message": self.raw_log_line,
            "processed_at": format_rfc3339(self.extracted_at),
            "is_valid": self.is_valid,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CIDRecord":
        return cls(
            cid=d["cid"],
            uuid=d.get("uuid", ""),
            timestamp=parse_rfc3339(d["timestamp"]),
            source_path=d["log_file"],
            raw_log_line=d["raw_message"],
            is_valid=bool(d["is_valid"]),
            extracted_at=parse_rfc3339(d["processed_at"]),
        )

    @classmethod
    def from_match(cls, match: CIDMatch) -> "CIDRecord":
        return cls(
            cid=match.cid,
            uuid=match.first_u5,
            timestamp=match.log_line.read_at,
            source_path=match.log_line.source_path,
            raw_log_line=match.log_line.text,
            is_valid=match.is_valid,
            extracted_at=utc_now(),
        )

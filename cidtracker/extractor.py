"""CID recognizer: finds CID occurrences in a log line and the v5 UUIDs inside them."""

import logging
import re

from cidtracker.config import CIDPattern, default_cid_patterns
from cidtracker.models import CIDMatch, LogLine, UUIDMatch, utc_now
from cidtracker.uuid_validator import UUIDValidator

logger = logging.getLogger(__name__)

# Literal version nibble 5 and RFC 4122 variant nibble.
U5_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-5[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}"
)
# A CID value shaped like a UUID; failing to parse it counts as malformed.
_UUID_SHAPED_RE = re.compile(r"^[0-9a-fA-F-]{36}$")


class CIDExtractor:
    def __init__(self, patterns: list[CIDPattern] | None = None,
                 validator: UUIDValidator | None = None):
        if patterns is None:
            patterns = default_cid_patterns()
        self._patterns = [p for p in patterns if p.enabled]
        self._validator = validator or UUIDValidator(enforce_u5=True)

    @property
    def pattern_names(self) -> list[str]:
        return [p.name for p in self._patterns]

    def extract(self, line: str, log_line: LogLine | None = None) -> list[CIDMatch]:
        """Return one CIDMatch per pattern occurrence, in pattern order.

        Occurrences captured at the same offset with the same value by more
        than one pattern are reported once.
        """
        text = line.strip()
        if not text:
            return []
        # Offsets are reported against the unstripped line.
        lead = len(line) - len(line.lstrip())
        if log_line is None:
            log_line = LogLine(source_path="", read_at=utc_now(), text=line)

        matches: list[CIDMatch] = []
        seen: set[tuple[int, str]] = set()
        for pattern in self._patterns:
            for m in pattern.regex.finditer(text):
                cid = m.group(pattern.uuid_group)
                if not cid:
                    continue
                start = lead + m.start(pattern.uuid_group)
                key = (start, cid)
                if key in seen:
                    continue
                seen.add(key)

                uuids, malformed = self._extract_uuids(cid)
                matches.append(CIDMatch(
                    cid=cid,
                    log_line=log_line,
                    uuids=uuids,
                    pattern=pattern.name,
                    start=start,
                    malformed=malformed,
                ))
        return matches

    def extract_line(self, log_line: LogLine) -> list[CIDMatch]:
        return self.extract(log_line.text, log_line)

    def _extract_uuids(self, cid: str) -> tuple[list[UUIDMatch], list[str]]:
        uuids = []
        for candidate in U5_RE.findall(cid):
            result = self._validator.validate(candidate)
            if result.version != 5:
                continue
            uuids.append(UUIDMatch(
                value=candidate.lower(),
                version=result.version,
                variant=result.variant,
            ))

        malformed = []
        if not uuids and _UUID_SHAPED_RE.match(cid):
            result = self._validator.validate(cid)
            if result.variant is None:
                logger.debug("Malformed UUID in CID %s: %s", cid, result.error)
                malformed.append(cid)
        return uuids, malformed

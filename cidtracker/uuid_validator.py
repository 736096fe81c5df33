"""UUID classification: version, variant, and version-5 validity."""

import re
import uuid

from cidtracker.models import ValidationResult, Variant

# The uuid module also accepts braces, urn: prefixes and undashed hex.
# Only the 36-character dashed form is a CID candidate.
_DASHED_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)

_VARIANTS = {
    uuid.RESERVED_NCS: Variant.NCS,
    uuid.RFC_4122: Variant.RFC4122,
    uuid.RESERVED_MICROSOFT: Variant.MICROSOFT,
    uuid.RESERVED_FUTURE: Variant.RESERVED,
}


def parse_uuid(value: str) -> uuid.UUID | None:
    """Parse the dashed hex form. Returns None for anything else."""
    if not _DASHED_RE.fullmatch(value):
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def uuid_version(u: uuid.UUID) -> int:
    """High nibble of byte 6.

    ``uuid.UUID.version`` is None for non-RFC variants, so read the byte.
    """
    return (u.bytes[6] & 0xF0) >> 4


def uuid_variant(u: uuid.UUID) -> Variant:
    """Decode byte 8: 0xxx NCS, 10xx RFC4122, 110x Microsoft, 111x Reserved."""
    return _VARIANTS[u.variant]


class UUIDValidator:
    def __init__(self, enforce_u5: bool = True):
        self._enforce_u5 = enforce_u5

    @property
    def enforce_u5(self) -> bool:
        return self._enforce_u5

    def validate(self, value: str) -> ValidationResult:
        parsed = parse_uuid(value)
        if parsed is None:
            return ValidationResult(valid=False, error="invalid UUID format")

        version = uuid_version(parsed)
        variant = uuid_variant(parsed)
        if self._enforce_u5 and version != 5:
            return ValidationResult(
                valid=False,
                version=version,
                variant=variant,
                error=f"expected UUID version 5, got version {version}",
            )
        return ValidationResult(valid=True, version=version, variant=variant)

    def is_version_5(self, value: str) -> bool:
        """True when the version nibble is 5, regardless of enforcement."""
        parsed = parse_uuid(value)
        return parsed is not None and uuid_version(parsed) == 5

    def is_valid_cid(self, value: str) -> bool:
        result = self.validate(value)
        return result.valid and (not self._enforce_u5 or result.is_u5)


_classifier = UUIDValidator(enforce_u5=False)


def classify(value: str) -> ValidationResult:
    """Classify without version enforcement."""
    return _classifier.validate(value)

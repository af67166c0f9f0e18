"""
core/models.py -- Domain dataclasses for input screening.

Pure data containers. All screening logic lives in core/sanitizer.py.
"""

from dataclasses import dataclass, field
from enum import Enum


class ThreatVerdict(str, Enum):
    """Result of screening one string against the signature table.

    INDETERMINATE means the engine could not finish (pattern timeout). It is
    never a pass: is_threat treats it the same as THREAT.
    """

    SAFE = "safe"
    THREAT = "threat"
    INDETERMINATE = "indeterminate"

    @property
    def is_threat(self) -> bool:
        return self is not ThreatVerdict.SAFE


@dataclass(frozen=True)
class SanitizedField:
    """One screened field.

    cleaned has control characters removed, whitespace collapsed and the
    dangerous characters escaped. valid reflects the shape and threat checks.
    """

    cleaned: str
    valid: bool


@dataclass(frozen=True)
class ValidationOutcome:
    """Every violation found across all fields, in the order checks ran.

    is_valid is derived from errors, so the two can never disagree.
    """

    fields: dict[str, SanitizedField] = field(default_factory=dict)
    errors: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def cleaned(self, name: str) -> str:
        """Shortcut for fields[name].cleaned; empty string for a missing field."""
        entry = self.fields.get(name)
        return entry.cleaned if entry is not None else ""

"""
core/sanitizer.py -- Threat-signature screening and normalization of untrusted text.

Pattern: Stateless service over an immutable, process-wide signature table.
THREAT_SIGNATURES is built once at import and never mutated, so one
SanitizationEngine (or many) can be shared across threads without locking.

Screening pipeline for a field:
  normalize() -> escape() -> shape check -> scan() on the *cleaned* value.

Canonical defense: escaping only. HTML tags are neutralized by escaping < and >;
there is no separate tag-stripping pass. Running a tag stripper after escaping
would never match anything, and running it before would silently change what
the user typed.

Fail-closed matching:
  Patterns run through the third-party `regex` module because it supports a
  per-call timeout (stdlib `re` cannot be interrupted). Each scan gets one
  deadline for the whole table. A timeout, a deadline overrun, or a non-string
  input produces ThreatVerdict.INDETERMINATE, which every caller treats as a
  threat.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

from __future__ import annotations

import html
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import regex

from core.config import get_settings
from core.errors import SecuritySignalError, ValidationError
from core.models import SanitizedField, ThreatVerdict, ValidationOutcome

logger = logging.getLogger("safevault.sanitizer")

# ---------------------------------------------------------------------------
# Signature table
# ---------------------------------------------------------------------------

_FLAGS = regex.IGNORECASE | regex.MULTILINE


@dataclass(frozen=True)
class ThreatSignature:
    attack_class: str  # "sql" | "xss" | "command"
    name: str
    pattern: Any  # compiled regex.Pattern


def _sig(attack_class: str, name: str, pattern: str) -> ThreatSignature:
    return ThreatSignature(attack_class, name, regex.compile(pattern, _FLAGS))


# Order matters only for which signature is reported first; any match is a threat.
THREAT_SIGNATURES: tuple[ThreatSignature, ...] = (
    # SQL injection
    _sig("sql", "quote", r"['\\]|%27|%2527"),
    _sig("sql", "line_comment", r"(?:-|%2D|%252D){2,}"),
    _sig("sql", "block_comment", r"/\*|\*/"),
    _sig("sql", "statement_terminator", r";|%3B|%253B"),
    _sig("sql", "sql_verb", r"\b(?:ALTER|CREATE|DELETE|DROP|EXEC(?:UTE)?|INSERT|MERGE|SELECT|UPDATE|UNION)\b"),
    # Cross-site scripting
    _sig("xss", "script_open", r"<\s*script"),
    _sig("xss", "script_close", r"<\s*/\s*script"),
    _sig("xss", "javascript_uri", r"javascript\s*:"),
    _sig("xss", "vbscript_uri", r"vbscript\s*:"),
    _sig("xss", "event_handler", r"on\w+\s*="),
    _sig("xss", "dangerous_element", r"<\s*(?:iframe|object|embed|link|meta)"),
    # Command / path injection
    _sig("command", "shell_metachar", r"[;&|`]"),
    _sig("command", "subshell", r"\$\("),
    _sig("command", "path_traversal", r"\.\.[\\/]"),
    _sig("command", "command_token", r"\b(?:cmd|dir|echo|cat|ls)\b"),
)

# ---------------------------------------------------------------------------
# Normalization / escaping tables
# ---------------------------------------------------------------------------

# NUL and C0 controls except \t \n \r, plus DEL.
_CONTROL_CHARS = regex.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RUN = regex.compile(r"\s+")

# html.escape covers & < > " ' (& first); the solidus is added on top.
_SOLIDUS_ENTITY = "&#x2F;"

_USERNAME_RE = regex.compile(r"[A-Za-z0-9._-]+")
_EMAIL_RE = regex.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 100


class SanitizationEngine:
    """Decide whether untrusted text is safe and produce its normalized form.

    Usage:
        engine = SanitizationEngine()
        outcome = engine.sanitize_and_validate("johndoe123", "john.doe@example.com")
        if not outcome.is_valid:
            ...  # outcome.errors lists every violation found
    """

    def __init__(
        self,
        scan_timeout_seconds: Optional[float] = None,
        signatures: tuple[ThreatSignature, ...] = THREAT_SIGNATURES,
    ) -> None:
        if scan_timeout_seconds is None:
            scan_timeout_seconds = get_settings().scan_timeout_seconds
        self.scan_timeout_seconds = scan_timeout_seconds
        self.signatures = signatures

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def normalize(text: Optional[str]) -> str:
        """Drop control characters, collapse whitespace runs to one space, trim.

        Anything that is not a string normalizes to "".
        """
        if not isinstance(text, str) or not text:
            return ""
        text = _CONTROL_CHARS.sub("", text)
        text = _WHITESPACE_RUN.sub(" ", text)
        return text.strip()

    @staticmethod
    def escape(text: Optional[str]) -> str:
        if not isinstance(text, str) or not text:
            return ""
        return html.escape(text, quote=True).replace("/", _SOLIDUS_ENTITY)

    def sanitize(self, text: Optional[str]) -> str:
        return self.escape(self.normalize(text))

    # ------------------------------------------------------------------
    # Threat screening
    # ------------------------------------------------------------------

    def scan(self, text: Any) -> ThreatVerdict:
        """Screen text against every signature within one time budget.

        Returns SAFE only when every signature ran to completion without a
        match. Empty text is SAFE; anything that is not a string is
        INDETERMINATE.
        """
        if text is None or text == "":
            return ThreatVerdict.SAFE
        if not isinstance(text, str):
            return ThreatVerdict.INDETERMINATE

        deadline = time.monotonic() + self.scan_timeout_seconds
        for signature in self.signatures:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Threat scan exceeded %.3fs budget before %s", self.scan_timeout_seconds, signature.name)
                return ThreatVerdict.INDETERMINATE
            try:
                if signature.pattern.search(text, timeout=remaining) is not None:
                    logger.debug("Threat signature matched: %s/%s", signature.attack_class, signature.name)
                    return ThreatVerdict.THREAT
            except TimeoutError:
                logger.warning("Threat signature %s timed out; treating input as malicious", signature.name)
                return ThreatVerdict.INDETERMINATE
        return ThreatVerdict.SAFE

    def contains_threat_signature(self, text: Any) -> bool:
        """True on any match. Indeterminate scans count as matches (fail-closed)."""
        return self.scan(text).is_threat

    def require_safe(self, text: Any, label: str) -> str:
        """Return the sanitized text or raise.

        Raises ValidationError when nothing is left after cleaning and
        SecuritySignalError when the cleaned text trips a signature. Neither
        message echoes the input.
        """
        cleaned = self.sanitize(text)
        if not cleaned:
            raise ValidationError(f"{label} empty after cleaning", public_message=f"{label} is required")
        if self.contains_threat_signature(cleaned):
            logger.warning("Malicious input detected in field: %s", label.lower())
            raise SecuritySignalError(
                f"{label} matched a threat signature",
                public_message=f"{label} contains potentially malicious content",
            )
        return cleaned

    # ------------------------------------------------------------------
    # Shape checks
    # ------------------------------------------------------------------

    @staticmethod
    def validate_username_shape(text: Optional[str]) -> bool:
        if not text or not USERNAME_MIN_LENGTH <= len(text) <= USERNAME_MAX_LENGTH:
            return False
        return _USERNAME_RE.fullmatch(text) is not None

    @staticmethod
    def validate_email_shape(text: Optional[str]) -> bool:
        if not text or len(text) > EMAIL_MAX_LENGTH:
            return False
        return _EMAIL_RE.fullmatch(text) is not None

    # ------------------------------------------------------------------
    # Composite
    # ------------------------------------------------------------------

    def sanitize_and_validate(self, username: Optional[str], email: Optional[str]) -> ValidationOutcome:
        """Normalize, escape and check both fields, collecting every violation.

        Nothing short-circuits: a missing username still lets the email be
        checked, and a shape failure still runs the threat scan. Email is
        lower-cased before cleaning. Threat scans run on the cleaned values.
        """
        errors: list[str] = []
        if isinstance(email, str):
            email = email.lower()
        fields = {
            "username": self._check_field(
                "username", "Username", username, self.validate_username_shape,
                "Username contains invalid characters or patterns", errors,
            ),
            "email": self._check_field(
                "email", "Email", email, self.validate_email_shape,
                "Email format is invalid or contains suspicious content", errors,
            ),
        }
        return ValidationOutcome(fields=fields, errors=tuple(errors))

    def _check_field(self, name, label, raw, shape_check, shape_error, errors: list[str]) -> SanitizedField:
        if not isinstance(raw, str) or not raw.strip():
            errors.append(f"{label} is required")
            return SanitizedField(cleaned="", valid=False)

        cleaned = self.sanitize(raw)
        valid = True
        if not shape_check(cleaned):
            errors.append(shape_error)
            valid = False
        if self.contains_threat_signature(cleaned):
            errors.append(f"{label} contains potentially malicious content")
            logger.warning("Malicious input detected in field: %s", name)
            valid = False
        return SanitizedField(cleaned=cleaned, valid=valid)

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors core/models.py --
dataclasses own domain shape; the credential service, store and flow do the work.

Layer rule: no imports from main.py. core/ may be imported, never the reverse.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Credential:
    """Stored password material.

    salt is fixed-length CSPRNG output, unique per credential. hash is the
    Argon2id derivation of (password, salt) -- deterministic and one-way.
    Neither is ever rendered to a user or written to a log.
    """

    salt: bytes = field(repr=False)
    hash: bytes = field(repr=False)


@dataclass
class UserRecord:
    """A user row as owned by the store.

    id is None before the record is written to the database. Timestamps are
    ISO 8601 UTC strings, set by the store.
    """

    username: str
    email: str
    credential: Credential
    role: Role = Role.USER
    id: int | None = None
    is_active: bool = True
    created_at: str = ""
    modified_at: str = ""
    last_login: str | None = None


@dataclass(frozen=True)
class UserSummary:
    """Safe projection of a UserRecord: everything except credential material."""

    id: int
    username: str
    email: str
    role: Role
    is_active: bool = True
    created_at: str = ""
    last_login: str | None = None


class AuthOutcome(str, Enum):
    """End state of one AuthFlow invocation."""

    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    CREATED = "created"
    REJECTED_INPUT = "rejected_input"
    CONFLICT = "conflict"
    FAILED = "failed"  # store or internal failure; retryable


@dataclass(frozen=True)
class AuthResult:
    """Caller-owned result of login or register. Built fresh, never mutated.

    message is the single user-facing line; errors lists every specific
    problem the caller may show (empty on success).
    """

    success: bool
    outcome: AuthOutcome
    message: str = ""
    user: UserSummary | None = None
    errors: tuple[str, ...] = ()

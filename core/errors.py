"""
core/errors.py -- Exception hierarchy for the SafeVault security core.

Every error carries a public_message: the only text that may reach an end
user. The exception's own str() may hold internal detail for the log; callers
surface public_message instead.

Propagation policy:
  ValidationError / SecuritySignalError -- user-facing, specific enough to fix
      the input. The login path collapses them to one generic message.
  NotFoundError / ConflictError -- expected outcomes of store lookups/inserts.
      The operator CLI raises NotFoundError for an unknown account;
      SanitizationEngine.require_safe raises SecuritySignalError.
  TransientStoreError -- I/O failure or timeout, safe to retry.
  InternalError -- unexpected fault. Logged in full, surfaced generically.

Layer rule: no imports from auth/.
"""

from __future__ import annotations

GENERIC_RETRY_MESSAGE = "An error occurred while processing your request. Please try again."


class SafeVaultError(Exception):
    """Base class for all errors raised by the security core."""

    public_message: str = GENERIC_RETRY_MESSAGE

    def __init__(self, detail: str = "", public_message: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(SafeVaultError):
    """Malformed username, email or password."""

    public_message = "Input failed validation."


class SecuritySignalError(SafeVaultError):
    """A threat signature was detected in submitted text."""

    public_message = "Input contains potentially malicious content."


class NotFoundError(SafeVaultError):
    public_message = "The requested record does not exist."


class ConflictError(SafeVaultError):
    """Uniqueness violation. Never says which field collided."""

    public_message = "Username or email already exists."


class TransientStoreError(SafeVaultError):
    """Store I/O failure or timeout. The caller may retry."""


class InternalError(SafeVaultError):
    pass

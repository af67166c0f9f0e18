"""
auth/flow.py -- Login, registration and password change as explicit flows.

States:
  login:            Anonymous -> AUTHENTICATED | REJECTED
  register:         Anonymous -> CREATED | REJECTED_INPUT | CONFLICT
  change_password:  (authenticated identity) -> True | False
  Any flow may end in FAILED when the store cannot answer.

Security design decisions:
  Enumeration resistance: unknown username, inactive user, missing credential
      and wrong password all return the same message. The unknown/inactive
      branches still burn one full KDF run (CredentialService.equalize_timing)
      so response time does not separate them from a wrong password.
      Registration conflicts never say which field collided.

  Fail-closed: the username is screened before it reaches the store. An
      indeterminate scan counts as a threat.

  Store calls: every call is bounded by asyncio.wait_for(store_timeout_seconds).
      A timeout becomes TransientStoreError. asyncio.CancelledError is not
      caught anywhere here; cancelling the caller's task cancels the flow.

  Error surfacing: login/register log store and internal failures with full
      detail and return one generic "try again" message. change_password
      returns bool for the credential decision and raises TransientStoreError
      for store failures, so a retryable outage is never read as "wrong
      current password".

  KDF work runs in a worker thread (asyncio.to_thread) so a slow Argon2
      derivation does not stall the event loop.

Layer rule: may import from core/. Never imported by core/.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar, Union

from auth.credentials import CredentialService
from auth.models import AuthOutcome, AuthResult, Role, UserRecord, UserSummary
from auth.store import UserStore
from core.config import get_settings, now_iso
from core.errors import (
    GENERIC_RETRY_MESSAGE,
    ConflictError,
    InternalError,
    SafeVaultError,
    TransientStoreError,
    ValidationError,
)
from core.sanitizer import SanitizationEngine

logger = logging.getLogger("safevault.auth")

T = TypeVar("T")

INVALID_CREDENTIALS_MESSAGE = "Invalid username or password."
INVALID_USERNAME_MESSAGE = "Username contains invalid characters."


def _rejected(message: str) -> AuthResult:
    return AuthResult(success=False, outcome=AuthOutcome.REJECTED, message=message, errors=(message,))


def _failed() -> AuthResult:
    return AuthResult(
        success=False, outcome=AuthOutcome.FAILED, message=GENERIC_RETRY_MESSAGE, errors=(GENERIC_RETRY_MESSAGE,)
    )


class AuthFlow:
    """Orchestrates SanitizationEngine, CredentialService and a UserStore.

    Holds no per-request state: one instance can serve concurrent requests.

    Usage:
        flow = AuthFlow(SqlUserStore())
        result = await flow.login("alice", "correct horse")
        if result.success:
            ...  # result.user.role drives session issuance (caller's job)
    """

    def __init__(
        self,
        store: UserStore,
        sanitizer: Optional[SanitizationEngine] = None,
        credentials: Optional[CredentialService] = None,
        store_timeout_seconds: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.sanitizer = sanitizer or SanitizationEngine()
        self.credentials = credentials or CredentialService()
        self.store_timeout_seconds = store_timeout_seconds or settings.store_timeout_seconds
        self.min_password_length = settings.min_password_length
        self.max_password_length = settings.max_password_length

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _store(self, call: Awaitable[T]) -> T:
        """Await one store call under the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientStoreError(f"store call timed out after {self.store_timeout_seconds}s") from exc
        except (ConnectionError, OSError) as exc:
            raise TransientStoreError(f"store I/O failure: {exc}") from exc

    def password_errors(self, password: object) -> list[str]:
        """Policy violations for a new password (empty list when acceptable)."""
        if not isinstance(password, str) or not password:
            return ["Password is required"]
        if len(password) < self.min_password_length:
            return [f"Password must be at least {self.min_password_length} characters"]
        if len(password) > self.max_password_length:
            return [f"Password must be at most {self.max_password_length} characters"]
        return []

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, username: Optional[str], password: Optional[str]) -> AuthResult:
        try:
            return await self._login(username, password)
        except SafeVaultError:
            logger.error("Login failed on a store error", exc_info=True)
            return _failed()
        except Exception:
            logger.exception("Unexpected error during login")
            return _failed()

    async def _login(self, username: Optional[str], password: Optional[str]) -> AuthResult:
        cleaned = self.sanitizer.sanitize(username)
        if not cleaned:
            return _rejected(INVALID_CREDENTIALS_MESSAGE)
        if self.sanitizer.contains_threat_signature(cleaned):
            logger.warning("Login rejected: <rejected input> matched a threat signature")
            return _rejected(INVALID_USERNAME_MESSAGE)

        if not isinstance(password, str) or len(password) > self.max_password_length:
            logger.warning("Login rejected for %s: unusable password input", cleaned)
            return _rejected(INVALID_CREDENTIALS_MESSAGE)

        user = await self._store(self.store.find_by_username(cleaned))
        if user is None or not user.is_active:
            await asyncio.to_thread(self.credentials.equalize_timing, password)
            logger.warning("Login rejected for %s: unknown or inactive user", cleaned)
            return _rejected(INVALID_CREDENTIALS_MESSAGE)

        credential = await self._store(self.store.find_credential_by_user_id(user.id))
        if credential is None:
            await asyncio.to_thread(self.credentials.equalize_timing, password)
            logger.warning("Login rejected for %s: no stored credential", cleaned)
            return _rejected(INVALID_CREDENTIALS_MESSAGE)

        if not await asyncio.to_thread(self.credentials.verify_credential, password, credential):
            logger.warning("Login rejected for %s: wrong password", cleaned)
            return _rejected(INVALID_CREDENTIALS_MESSAGE)

        await self._store(self.store.update_last_login(user.id))
        logger.info("Successful login for user: %s (ID: %s)", user.username, user.id)
        return AuthResult(success=True, outcome=AuthOutcome.AUTHENTICATED, message="Login successful.", user=user)

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    async def register(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        role: Union[Role, str] = Role.USER,
    ) -> AuthResult:
        try:
            return await self._register(username, email, password, role)
        except SafeVaultError:
            logger.error("Registration failed on a store error", exc_info=True)
            return _failed()
        except Exception:
            logger.exception("Unexpected error during registration")
            return _failed()

    async def _register(self, username, email, password, role) -> AuthResult:
        outcome = self.sanitizer.sanitize_and_validate(username, email)
        errors = list(outcome.errors)
        errors.extend(self.password_errors(password))
        try:
            role = Role(role)
        except ValueError:
            errors.append("Role is invalid")
        if errors:
            return AuthResult(
                success=False,
                outcome=AuthOutcome.REJECTED_INPUT,
                message="Registration failed validation.",
                errors=tuple(errors),
            )

        clean_username = outcome.cleaned("username")
        clean_email = outcome.cleaned("email")

        if await self._store(self.store.exists_by_username_or_email(clean_username, clean_email)):
            return self._conflict(clean_username)

        credential = await asyncio.to_thread(self.credentials.new_credential, password)
        stamp = now_iso()
        record = UserRecord(
            username=clean_username,
            email=clean_email,
            credential=credential,
            role=role,
            created_at=stamp,
            modified_at=stamp,
        )
        try:
            user_id = await self._store(self.store.create(record))
        except ConflictError:
            # Lost the race against a concurrent registration.
            return self._conflict(clean_username)

        summary = UserSummary(id=user_id, username=clean_username, email=clean_email, role=role, created_at=stamp)
        logger.info("New user registered: %s (ID: %s) with role: %s", clean_username, user_id, role.value)
        return AuthResult(
            success=True, outcome=AuthOutcome.CREATED, message="User registered successfully.", user=summary
        )

    @staticmethod
    def _conflict(username: str) -> AuthResult:
        logger.warning("Registration conflict for username %s", username)
        message = ConflictError.public_message
        return AuthResult(success=False, outcome=AuthOutcome.CONFLICT, message=message, errors=(message,))

    # ------------------------------------------------------------------
    # Change password
    # ------------------------------------------------------------------

    async def change_password(self, user_id: int, current_password: str, new_password: str) -> bool:
        """Replace the credential of an already-authenticated user.

        Returns False, with no mutation, when the user has no credential or
        current_password does not verify. Raises ValidationError when
        new_password breaks the password policy and TransientStoreError when
        the store fails or times out.
        """
        problems = self.password_errors(new_password)
        if problems:
            raise ValidationError("new password rejected by policy", public_message=problems[0])

        try:
            credential = await self._store(self.store.find_credential_by_user_id(user_id))
            if credential is None:
                logger.warning("Password change rejected for user id %s: no credential", user_id)
                return False
            if not isinstance(current_password, str) or not await asyncio.to_thread(
                self.credentials.verify_credential, current_password, credential
            ):
                logger.warning("Password change rejected for user id %s: wrong current password", user_id)
                return False

            replacement = await asyncio.to_thread(self.credentials.new_credential, new_password)
            updated = await self._store(self.store.update_credential(user_id, replacement))
        except SafeVaultError as exc:
            logger.error("Password change failed on a store error for user id %s", user_id, exc_info=True)
            if isinstance(exc, TransientStoreError):
                raise
            raise TransientStoreError(str(exc)) from exc
        except Exception as exc:
            logger.exception("Unexpected error changing password for user id %s", user_id)
            raise InternalError(f"password change failed for user id {user_id}") from exc

        if updated:
            logger.info("Password changed for user id %s", user_id)
        return updated

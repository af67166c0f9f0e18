"""
tests/test_auth_flow.py -- AuthFlow login, registration and password change.

Covers:
  - happy paths for register -> login -> change_password
  - enumeration resistance: unknown user, inactive user and wrong password
    produce identical messages; conflicts never name the colliding field
  - threat-bearing usernames are rejected before any store lookup
  - check-then-create race resolved by the store's uniqueness guarantee
  - store timeouts and failures surface as the generic retry message
    (login/register) or TransientStoreError (change_password)
  - cancellation propagates instead of being swallowed
"""

from __future__ import annotations

import asyncio

import pytest

from auth.flow import INVALID_CREDENTIALS_MESSAGE, INVALID_USERNAME_MESSAGE, AuthFlow
from auth.models import AuthOutcome, Role
from core.errors import GENERIC_RETRY_MESSAGE, ConflictError, TransientStoreError, ValidationError

PASSWORD = "correct-horse-battery"


def _register(flow, username="johndoe123", email="john.doe@example.com", password=PASSWORD, **kwargs):
    return asyncio.run(flow.register(username, email, password, **kwargs))


# ---------------------------------------------------------------------------
# Fake stores for failure injection
# ---------------------------------------------------------------------------


class _DelegatingStore:
    """Forwards every call to a real store; subclasses override one method."""

    def __init__(self, inner):
        self.inner = inner
        self.lookups = 0

    async def find_by_username(self, username):
        self.lookups += 1
        return await self.inner.find_by_username(username)

    async def find_by_email(self, email):
        return await self.inner.find_by_email(email)

    async def find_by_id(self, user_id):
        return await self.inner.find_by_id(user_id)

    async def find_credential_by_user_id(self, user_id):
        return await self.inner.find_credential_by_user_id(user_id)

    async def exists_by_username_or_email(self, username, email):
        return await self.inner.exists_by_username_or_email(username, email)

    async def create(self, record):
        return await self.inner.create(record)

    async def update_credential(self, user_id, credential):
        return await self.inner.update_credential(user_id, credential)

    async def update_last_login(self, user_id):
        return await self.inner.update_last_login(user_id)


class _SlowStore(_DelegatingStore):
    async def find_by_username(self, username):
        await asyncio.sleep(5)

    async def find_credential_by_user_id(self, user_id):
        await asyncio.sleep(5)


class _BrokenStore(_DelegatingStore):
    async def find_by_username(self, username):
        raise TransientStoreError("connection refused: db.internal:5432")

    async def exists_by_username_or_email(self, username, email):
        raise OSError("disk I/O error at /var/lib/safevault")


class _BuggyStore(_DelegatingStore):
    async def find_by_username(self, username):
        raise RuntimeError("unexpected None in row mapper")


class _RacingStore(_DelegatingStore):
    """Existence check passes, then the insert loses to a concurrent registration."""

    async def exists_by_username_or_email(self, username, email):
        return False

    async def create(self, record):
        raise ConflictError("UNIQUE constraint failed: users.email")


class _CancelledStore(_DelegatingStore):
    async def find_by_username(self, username):
        raise asyncio.CancelledError()


@pytest.fixture
def make_flow(store, engine, credentials):
    def factory(store_cls, timeout=None):
        return AuthFlow(store_cls(store), sanitizer=engine, credentials=credentials, store_timeout_seconds=timeout)

    return factory


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


def test_register_creates_user(flow, store):
    result = _register(flow, role="admin")
    assert result.success is True
    assert result.outcome is AuthOutcome.CREATED
    assert result.errors == ()
    assert result.user.username == "johndoe123"
    assert result.user.email == "john.doe@example.com"
    assert result.user.role is Role.ADMIN
    assert asyncio.run(store.find_by_id(result.user.id)) is not None


def test_register_lowercases_email(flow):
    result = _register(flow, email="John.Doe@Example.COM")
    assert result.user.email == "john.doe@example.com"


def test_register_rejects_injection_input_with_all_errors(flow, store):
    result = _register(flow, username="admin'; DROP TABLE Users; --", email="bad", password="short")
    assert result.success is False
    assert result.outcome is AuthOutcome.REJECTED_INPUT
    assert "Username contains potentially malicious content" in result.errors
    assert "Email format is invalid or contains suspicious content" in result.errors
    assert "Password must be at least 8 characters" in result.errors
    assert asyncio.run(store.count_users()) == 0


def test_register_rejects_unknown_role(flow):
    result = _register(flow, role="superuser")
    assert result.outcome is AuthOutcome.REJECTED_INPUT
    assert result.errors == ("Role is invalid",)


def test_register_same_email_twice_is_conflict(flow):
    assert _register(flow).success
    result = _register(flow, username="janedoe456", email="JOHN.DOE@example.com")
    assert result.success is False
    assert result.outcome is AuthOutcome.CONFLICT
    assert result.message == "Username or email already exists."


def test_register_same_username_twice_gives_identical_conflict_message(flow):
    _register(flow)
    by_username = _register(flow, email="someone.else@example.com")
    by_email = _register(flow, username="someoneelse")
    assert by_username.outcome is by_email.outcome is AuthOutcome.CONFLICT
    assert by_username.message == by_email.message
    assert by_username.errors == by_email.errors


def test_register_race_lost_at_insert_is_conflict(make_flow):
    result = _register(make_flow(_RacingStore))
    assert result.outcome is AuthOutcome.CONFLICT
    assert result.message == "Username or email already exists."


def test_register_store_failure_returns_generic_message(make_flow):
    result = _register(make_flow(_BrokenStore))
    assert result.outcome is AuthOutcome.FAILED
    assert result.message == GENERIC_RETRY_MESSAGE
    assert "/var/lib" not in " ".join(result.errors)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_success_records_last_login(flow, store):
    user_id = _register(flow).user.id
    result = asyncio.run(flow.login("johndoe123", PASSWORD))
    assert result.success is True
    assert result.outcome is AuthOutcome.AUTHENTICATED
    assert result.user.id == user_id
    assert result.user.role is Role.USER
    assert asyncio.run(store.find_by_id(user_id)).last_login


def test_unknown_user_and_wrong_password_are_indistinguishable(flow):
    _register(flow)
    unknown = asyncio.run(flow.login("nosuchuser", PASSWORD))
    wrong = asyncio.run(flow.login("johndoe123", "wrong-password"))
    assert unknown.success is wrong.success is False
    assert unknown.outcome is wrong.outcome is AuthOutcome.REJECTED
    assert unknown.message == wrong.message == INVALID_CREDENTIALS_MESSAGE
    assert unknown.errors == wrong.errors


def test_unknown_user_still_runs_kdf(flow, monkeypatch):
    calls = []
    monkeypatch.setattr(flow.credentials, "equalize_timing", lambda password: calls.append(password) or False)
    asyncio.run(flow.login("nosuchuser", PASSWORD))
    assert calls == [PASSWORD]


def test_inactive_user_gets_same_message(flow, store):
    user_id = _register(flow).user.id
    asyncio.run(store.set_active(user_id, False))
    result = asyncio.run(flow.login("johndoe123", PASSWORD))
    assert result.success is False
    assert result.message == INVALID_CREDENTIALS_MESSAGE


def test_login_with_threat_username_never_reaches_store(make_flow):
    flow = make_flow(_DelegatingStore)
    payload = "<img src=x onerror=alert(1)>"
    result = asyncio.run(flow.login(payload, PASSWORD))
    assert result.outcome is AuthOutcome.REJECTED
    assert result.message == INVALID_USERNAME_MESSAGE
    assert "onerror" not in result.message
    assert flow.store.lookups == 0


def test_login_with_empty_username_is_rejected(flow):
    result = asyncio.run(flow.login("   ", PASSWORD))
    assert result.outcome is AuthOutcome.REJECTED
    assert result.message == INVALID_CREDENTIALS_MESSAGE


@pytest.mark.parametrize("username", [12345, ["johndoe123"], {"name": "johndoe123"}])
def test_login_with_non_string_username_is_rejected_not_failed(flow, username):
    result = asyncio.run(flow.login(username, PASSWORD))
    assert result.outcome is AuthOutcome.REJECTED
    assert result.message == INVALID_CREDENTIALS_MESSAGE


def test_register_with_non_string_username_reports_required(flow):
    result = _register(flow, username=12345)
    assert result.outcome is AuthOutcome.REJECTED_INPUT
    assert "Username is required" in result.errors


def test_login_timeout_is_transient_failure(make_flow):
    result = asyncio.run(make_flow(_SlowStore, timeout=0.05).login("johndoe123", PASSWORD))
    assert result.success is False
    assert result.outcome is AuthOutcome.FAILED
    assert result.message == GENERIC_RETRY_MESSAGE


def test_login_store_error_hides_internal_detail(make_flow):
    result = asyncio.run(make_flow(_BrokenStore).login("johndoe123", PASSWORD))
    assert result.outcome is AuthOutcome.FAILED
    assert "db.internal" not in result.message
    assert all("db.internal" not in e for e in result.errors)


def test_login_unexpected_error_is_generic_failure(make_flow):
    result = asyncio.run(make_flow(_BuggyStore).login("johndoe123", PASSWORD))
    assert result.outcome is AuthOutcome.FAILED
    assert result.message == GENERIC_RETRY_MESSAGE


def test_login_cancellation_propagates(make_flow):
    with pytest.raises(asyncio.CancelledError):
        asyncio.run(make_flow(_CancelledStore).login("johndoe123", PASSWORD))


def test_auth_result_is_immutable(flow):
    result = asyncio.run(flow.login("nosuchuser", PASSWORD))
    with pytest.raises(AttributeError):
        result.success = True


# ---------------------------------------------------------------------------
# Change password
# ---------------------------------------------------------------------------


def test_change_password_with_wrong_current_leaves_credential_unchanged(flow, store):
    user_id = _register(flow).user.id
    before = asyncio.run(store.find_credential_by_user_id(user_id))
    assert asyncio.run(flow.change_password(user_id, "not-the-password", "brand-new-password")) is False
    after = asyncio.run(store.find_credential_by_user_id(user_id))
    assert after.salt == before.salt
    assert after.hash == before.hash


def test_change_password_replaces_salt_and_hash(flow, store):
    user_id = _register(flow).user.id
    before = asyncio.run(store.find_credential_by_user_id(user_id))
    assert asyncio.run(flow.change_password(user_id, PASSWORD, "brand-new-password")) is True
    after = asyncio.run(store.find_credential_by_user_id(user_id))
    assert after.salt != before.salt
    assert after.hash != before.hash
    assert asyncio.run(flow.login("johndoe123", "brand-new-password")).success is True
    assert asyncio.run(flow.login("johndoe123", PASSWORD)).success is False


def test_change_password_unknown_user_returns_false(flow):
    assert asyncio.run(flow.change_password(999, PASSWORD, "brand-new-password")) is False


def test_change_password_rejects_weak_new_password(flow):
    user_id = _register(flow).user.id
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(flow.change_password(user_id, PASSWORD, "short"))
    assert excinfo.value.public_message == "Password must be at least 8 characters"


def test_change_password_timeout_raises_transient(make_flow):
    flow = make_flow(_SlowStore, timeout=0.05)
    with pytest.raises(TransientStoreError) as excinfo:
        asyncio.run(flow.change_password(1, PASSWORD, "brand-new-password"))
    assert excinfo.value.public_message == GENERIC_RETRY_MESSAGE

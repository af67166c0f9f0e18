"""
auth/store.py -- UserStore contract and its SQLAlchemy Core implementation.

Pattern: Repository + Data Mapper.
UserStore is the contract AuthFlow consumes (a typing.Protocol, so any object
with matching async methods plugs in). SqlUserStore is the repository;
_row_to_summary / _row_to_credential are the mappers. Flow code never
touches SQL directly.

Async contract:
  Every operation is a coroutine. SqlUserStore runs the blocking SQLAlchemy
  call in a worker thread via asyncio.to_thread(), so callers can bound it
  with asyncio.wait_for() and cancel it like any other awaitable.

Error translation:
  IntegrityError (UNIQUE violation)    -> ConflictError
  Other DBAPIError / SQLAlchemyError   -> TransientStoreError
  OSError (disk, permissions)          -> TransientStoreError
  The original exception is chained (raise ... from exc) for the log.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Uniqueness of username and email is enforced by UNIQUE constraints, which
  closes the check-then-insert race between concurrent registrations: the
  loser of the race gets ConflictError from create().
  Emails are stored lower-case and compared case-insensitively.

DB path: auth/safevault_auth.db unless DATABASE_URL says otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Callable, Optional, Protocol, TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from auth.models import Credential, Role, UserRecord, UserSummary
from core.config import get_settings, now_iso
from core.errors import ConflictError, TransientStoreError

logger = logging.getLogger("safevault.auth.store")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class UserStore(Protocol):
    """Persistence boundary consumed by AuthFlow. All operations may fail."""

    async def find_by_username(self, username: str) -> Optional[UserSummary]: ...

    async def find_by_email(self, email: str) -> Optional[UserSummary]: ...

    async def find_by_id(self, user_id: int) -> Optional[UserSummary]: ...

    async def find_credential_by_user_id(self, user_id: int) -> Optional[Credential]: ...

    async def exists_by_username_or_email(self, username: str, email: str) -> bool: ...

    async def create(self, record: UserRecord) -> int:
        """Insert and return the new id. Raises ConflictError on a uniqueness violation."""
        ...

    async def update_credential(self, user_id: int, credential: Credential) -> bool: ...

    async def update_last_login(self, user_id: int) -> bool: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),  # stored lower-case
    Column("password_hash", LargeBinary, nullable=False),
    Column("salt", LargeBinary, nullable=False),
    Column("role", String(10), nullable=False, server_default=Role.USER.value),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("modified_at", String(32), nullable=False),
    Column("last_login", String(32)),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlUserStore:
    """SQLAlchemy-backed UserStore.

    Usage:
        store = SqlUserStore()
        user_id = await store.create(UserRecord(username="alice", email="a@example.com", credential=cred))
        summary = await store.find_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            # A private :memory: DB lives in one connection; worker threads
            # must all share it or they each see an empty schema.
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    async def _run(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking query in a worker thread, translating driver errors."""
        try:
            return await asyncio.to_thread(partial(fn, *args))
        except IntegrityError as exc:
            raise ConflictError(f"uniqueness violation in {fn.__name__}") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"{fn.__name__} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_by_username(self, username: str) -> Optional[UserSummary]:
        """Exact, case-sensitive match. Inactive users are returned too."""
        return await self._run(self._select_one, _users.c.username == username)

    async def find_by_email(self, email: str) -> Optional[UserSummary]:
        return await self._run(self._select_one, func.lower(_users.c.email) == email.lower())

    async def find_by_id(self, user_id: int) -> Optional[UserSummary]:
        return await self._run(self._select_one, _users.c.id == user_id)

    async def find_credential_by_user_id(self, user_id: int) -> Optional[Credential]:
        return await self._run(self._select_credential, user_id)

    async def exists_by_username_or_email(self, username: str, email: str) -> bool:
        return await self._run(self._count_matching, username, email) > 0

    async def list_users(self) -> list[UserSummary]:
        """All users ordered by username. Operator-only."""
        return await self._run(self._select_all)

    async def count_users(self) -> int:
        return await self._run(self._count_all)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, record: UserRecord) -> int:
        """Insert a new user and return its id.

        Raises ConflictError if the username or email is already taken. Which
        one collided is deliberately not reported.
        """
        return await self._run(self._insert, record)

    async def update_credential(self, user_id: int, credential: Credential) -> bool:
        """Replace hash and salt in one UPDATE. False if user_id was not found."""
        return await self._run(
            self._update, user_id, {"password_hash": credential.hash, "salt": credential.salt, "modified_at": now_iso()}
        )

    async def update_last_login(self, user_id: int) -> bool:
        return await self._run(self._update, user_id, {"last_login": now_iso()})

    async def set_active(self, user_id: int, active: bool) -> bool:
        return await self._run(self._update, user_id, {"is_active": active, "modified_at": now_iso()})

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Blocking implementations (run in worker threads)
    # ------------------------------------------------------------------

    def _select_one(self, condition) -> Optional[UserSummary]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(condition)).fetchone()
        return _row_to_summary(row) if row is not None else None

    def _select_all(self) -> list[UserSummary]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_summary(r) for r in rows]

    def _select_credential(self, user_id: int) -> Optional[Credential]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.password_hash, _users.c.salt).where(_users.c.id == user_id)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def _count_matching(self, username: str, email: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(or_(_users.c.username == username, func.lower(_users.c.email) == email.lower()))
            ).scalar()
        return result or 0

    def _count_all(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def _insert(self, record: UserRecord) -> int:
        stamp = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=record.username,
                    email=record.email.lower(),
                    password_hash=record.credential.hash,
                    salt=record.credential.salt,
                    role=Role(record.role).value,
                    is_active=record.is_active,
                    created_at=record.created_at or stamp,
                    modified_at=record.modified_at or stamp,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def _update(self, user_id: int, values: dict) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_summary(row) -> UserSummary:
    return UserSummary(
        id=row.id,
        username=row.username,
        email=row.email,
        role=Role(row.role),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_credential(row) -> Credential:
    return Credential(salt=bytes(row.salt), hash=bytes(row.password_hash))

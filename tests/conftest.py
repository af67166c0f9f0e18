"""
tests/conftest.py -- Shared test fixtures for the SafeVault security core.

This module provides:
  - store: isolated SqlUserStore on a private in-memory SQLite DB
  - credentials: CredentialService with cheap Argon2 parameters
  - flow: AuthFlow wired to the two above

Design: SqlUserStore runs every query in a worker thread. A plain
sqlite:///:memory: URL is given a StaticPool by the store so all threads share
one connection (and therefore one schema).

DEBUG and the cheap Argon2 parameters must be set before any core/auth import
so get_settings() accepts them instead of raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator

# CRITICAL: set before any core/auth import -- get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest

from auth.credentials import CredentialService
from auth.flow import AuthFlow
from auth.store import SqlUserStore
from core.sanitizer import SanitizationEngine


@pytest.fixture
def engine() -> SanitizationEngine:
    # Generous budget so slow CI machines never produce a spurious timeout.
    return SanitizationEngine(scan_timeout_seconds=1.0)


@pytest.fixture(scope="session")
def credentials() -> CredentialService:
    return CredentialService()


@pytest.fixture
def store() -> Generator[SqlUserStore, None, None]:
    s = SqlUserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def flow(store: SqlUserStore, engine: SanitizationEngine, credentials: CredentialService) -> AuthFlow:
    return AuthFlow(store, sanitizer=engine, credentials=credentials)

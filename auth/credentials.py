"""
auth/credentials.py -- Salt generation, password-hash derivation and verification.

Security design decisions:
  KDF: Argon2id via argon2-cffi's low-level hash_secret_raw(). Argon2id is
       memory-hard, so each guess in an offline attack costs the configured
       memory as well as CPU time. The low-level API is used (rather than
       PasswordHasher's encoded strings) because the salt is generated and
       stored separately: hash = Argon2id(password, salt) is deterministic for
       a given (password, salt, parameters) triple.

  Salts: secrets.token_bytes() -- the OS CSPRNG. Safe for concurrent use; every
       call draws fresh entropy and there is no shared state to corrupt.

  Comparison: hmac.compare_digest() runs in time independent of where the
       first mismatching byte sits. Never compare hashes with ==.

  Timing equalization: a dummy credential is derived once per service so the
       login flow can run a full verify() even when the username does not
       exist. Unknown-user and wrong-password responses then cost the same.

Cost parameters come from core.config.get_settings(). Changing them makes
existing hashes unverifiable, so treat them as part of the stored format.

Layer rule: may import from core/. Never imported by core/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import Optional

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from auth.models import Credential
from core.config import get_settings

logger = logging.getLogger("safevault.auth")


class CredentialService:
    """Turn a password into storable material and verify it later.

    Usage:
        service = CredentialService()
        credential = service.new_credential("correct horse")
        service.verify("correct horse", credential.hash, credential.salt)  # True
    """

    def __init__(
        self,
        salt_bytes: Optional[int] = None,
        hash_bytes: Optional[int] = None,
        time_cost: Optional[int] = None,
        memory_cost_kib: Optional[int] = None,
        parallelism: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.salt_bytes = salt_bytes or settings.salt_bytes
        self.hash_bytes = hash_bytes or settings.hash_bytes
        self.time_cost = time_cost or settings.argon2_time_cost
        self.memory_cost_kib = memory_cost_kib or settings.argon2_memory_cost_kib
        self.parallelism = parallelism or settings.argon2_parallelism
        if self.salt_bytes < 32:
            raise ValueError("salt_bytes must be at least 32.")

        # Computed once so the first failed login is not measurably slower
        # than later ones.
        self._dummy = self.new_credential(secrets.token_urlsafe(16))

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def generate_salt(self) -> bytes:
        """Return salt_bytes of fresh CSPRNG output."""
        return secrets.token_bytes(self.salt_bytes)

    def derive_hash(self, password: str, salt: bytes) -> bytes:
        """Argon2id(password, salt). Same inputs always give the same bytes.

        Raises TypeError for a non-str password and HashingError if argon2
        rejects the parameters.
        """
        if not isinstance(password, str):
            raise TypeError("password must be str")
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost_kib,
            parallelism=self.parallelism,
            hash_len=self.hash_bytes,
            type=Type.ID,
        )

    def verify(self, password: str, hash: bytes, salt: bytes) -> bool:
        """Recompute the hash and compare in constant time.

        Any failure to derive (wrong types, argon2 error) is a mismatch.
        """
        try:
            computed = self.derive_hash(password, salt)
        except (HashingError, TypeError, ValueError):
            logger.debug("Credential derivation failed during verify", exc_info=True)
            return False
        if not isinstance(hash, (bytes, bytearray)):
            return False
        return hmac.compare_digest(computed, bytes(hash))

    # ------------------------------------------------------------------
    # Helpers used by the flow
    # ------------------------------------------------------------------

    def new_credential(self, password: str) -> Credential:
        """Fresh salt + derived hash. Called on registration and password change."""
        salt = self.generate_salt()
        return Credential(salt=salt, hash=self.derive_hash(password, salt))

    def verify_credential(self, password: str, credential: Credential) -> bool:
        return self.verify(password, credential.hash, credential.salt)

    def equalize_timing(self, password: str) -> bool:
        """Spend one full verify() on the dummy credential. Always False."""
        self.verify_credential(password, self._dummy)
        return False

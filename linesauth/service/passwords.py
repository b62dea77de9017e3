from __future__ import annotations

import secrets
from typing import Optional, Protocol

from argon2 import PasswordHasher as _Argon2, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from linesauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    algorithm: str

    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: str, password: str) -> bool: ...

    def verify_dummy(self, password: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing with a fixed dummy digest for unknown-account logins.

    ``verify_dummy`` burns the same work as a real verification so callers can
    keep response timing independent of whether an account exists.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
        parallelism: Optional[int] = None,
    ) -> None:
        params = {
            key: value
            for key, value in (
                ("time_cost", time_cost),
                ("memory_cost", memory_cost),
                ("parallelism", parallelism),
            )
            if value is not None
        }
        self._hasher = _Argon2(type=Type.ID, **params)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            logger.warning("password_verification_error")
            return False

    @property
    def dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_urlsafe(24))
        return self._dummy_hash

    def verify_dummy(self, password: str) -> bool:
        self.verify(self.dummy_hash, password)
        return False

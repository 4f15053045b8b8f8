from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bookora.logging import get_logger
from bookora.service.errors import WeakPasswordError

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: str, password: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing; verification failures come back as ``False``."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        self.logger = get_logger(__name__)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unreadable")
            return False


def validate_password_strength(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPasswordError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"min_length": MIN_PASSWORD_LENGTH},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise WeakPasswordError(
            f"password must be at most {MAX_PASSWORD_LENGTH} characters",
            detail={"max_length": MAX_PASSWORD_LENGTH},
        )


__all__ = [
    "PasswordHasher",
    "Argon2PasswordHasher",
    "validate_password_strength",
    "MIN_PASSWORD_LENGTH",
]

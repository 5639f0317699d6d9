from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id digests; the only place cleartext passwords are touched."""

    def __init__(self, hasher: _Argon2Hasher | None = None) -> None:
        self._hasher = hasher or _Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True

from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from tessera.logging import get_logger
from tessera.service.errors import InternalError

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with the library's default work factors.

    Hashes are self-describing PHC strings, so stored values keep verifying
    after the defaults change and ``needs_rehash`` reports which ones to
    upgrade.
    """

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = Argon2Hasher(type=Type.ID)
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_hash = self._hasher.hash("tessera-dummy-password")

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise InternalError() from exc

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            logger.error("password_hash_malformed", error=str(exc))
            raise InternalError() from exc
        except VerificationError as exc:
            logger.error("password_verification_error", error=str(exc))
            raise InternalError() from exc

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError as exc:
            logger.error("password_hash_malformed", error=str(exc))
            raise InternalError() from exc

    def verify_dummy(self, password: str) -> None:
        self.verify(password, self._dummy_hash)

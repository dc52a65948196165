from __future__ import annotations

import hashlib
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from tessera.config import TokenConfig
from tessera.logging import get_logger
from tessera.service.errors import InvalidRefreshTokenError
from tessera.storage.models import RefreshToken

logger = get_logger(__name__)

# 32 bytes of entropy, URL-safe base64 encoded
REFRESH_TOKEN_BYTES = 32


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_active_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_token_hash: str, replacement: RefreshToken
    ) -> Optional[RefreshToken]: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self) -> int: ...


class RefreshTokenManager:
    """Opaque refresh tokens persisted only as SHA-256 digests.

    The raw value is returned exactly once, from ``issue`` or ``rotate``.
    Lookups never say why a token was rejected: unknown, expired, revoked
    and already-rotated tokens all look the same to the caller.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        config: TokenConfig,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    def generate() -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    @staticmethod
    def hash_for_storage(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    def _new_record(self, user_id: str, raw_token: str) -> RefreshToken:
        return RefreshToken.new(
            user_id,
            self.hash_for_storage(raw_token),
            self.config.refresh_token_ttl_seconds,
            now=self._now(),
        )

    def issue(self, user_id: str) -> str:
        raw = self.generate()
        record = self.store.create_refresh_token(self._new_record(user_id, raw))
        logger.info("refresh_token_issued", user_id=user_id, record_id=record.id)
        return raw

    def find_active(self, raw_token: str) -> Optional[RefreshToken]:
        if not raw_token or not isinstance(raw_token, str):
            return None
        return self.store.get_active_refresh_token(self.hash_for_storage(raw_token))

    def rotate(self, record: RefreshToken) -> str:
        """Revoke ``record`` and persist its successor in one store operation.

        Raises ``InvalidRefreshTokenError`` when the record stopped being
        active between lookup and rotation (a concurrent rotation won).
        """

        raw = self.generate()
        replacement = self.store.rotate_refresh_token(
            record.token_hash, self._new_record(record.user_id, raw)
        )
        if replacement is None:
            logger.warning(
                "refresh_token_rotation_lost", user_id=record.user_id, record_id=record.id
            )
            raise InvalidRefreshTokenError()
        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            revoked_record_id=record.id,
            record_id=replacement.id,
        )
        return raw

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, revoked=revoked)
        return revoked

    def purge_expired(self) -> int:
        purged = self.store.delete_expired_refresh_tokens()
        if purged:
            logger.info("expired_refresh_tokens_purged", purged=purged)
        return purged

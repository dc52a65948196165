from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            username=username,
            first_name=first_name,
            last_name=last_name,
            is_active=True,
            created_at=now,
            updated_at=now,
        )


@dataclass
class RefreshToken:
    """Persisted half of a refresh token; the raw value is never stored."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_seconds: int,
        *,
        now: datetime | None = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            created_at=issued,
            revoked=False,
        )

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.revoked and self.expires_at > (now or utcnow())

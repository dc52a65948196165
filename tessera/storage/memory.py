from __future__ import annotations

import contextlib
import copy
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation, StorageError, StoreUnavailable
from tessera.storage.models import RefreshToken, User, utcnow


class MemoryStore:
    """In-process store for users and refresh tokens.

    Every operation runs under a single re-entrant lock, which is what makes
    ``rotate_refresh_token`` atomic. Each mutation is written to a JSON
    snapshot under ``fs_root/state`` before it returns; if the write fails
    the in-memory state is restored, so callers never observe a change that
    was not persisted. The snapshot is reloaded on construction.
    """

    def __init__(
        self, fs_root: str = "/tmp/tessera", *, timeout_seconds: float = 5.0
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.timeout_seconds = timeout_seconds
        # RLock so helpers can re-enter while a public call holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.timeout_seconds):
            self.logger.error("memory_store_lock_timeout", timeout=self.timeout_seconds)
            raise StoreUnavailable(
                "store lock not acquired in time",
                {"timeout_seconds": self.timeout_seconds},
            )
        try:
            yield
        finally:
            self._data_lock.release()

    @contextlib.contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply a change under the lock and persist it, or roll it back."""

        with self._locked():
            users = copy.deepcopy(self.users)
            refresh_tokens = copy.deepcopy(self.refresh_tokens)
            try:
                yield
                self._persist_state()
            except Exception:
                self.users = users
                self.refresh_tokens = refresh_tokens
                raise

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def ping(self) -> bool:
        with self._locked():
            return True

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        with self._mutation():
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            if username is not None and any(
                existing.username == username for existing in self.users.values()
            ):
                raise ConstraintViolation("username already exists", field="username")
            user = User.new(
                email,
                password_hash,
                username=username,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked():
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._locked():
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._locked():
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def touch_user(self, user_id: str) -> None:
        with self._locked():
            if user_id not in self.users:
                return
            with self._mutation():
                self.users[user_id].updated_at = utcnow()

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._locked():
            if user_id not in self.users:
                return None
            with self._mutation():
                user = self.users[user_id]
                user.is_active = is_active
                user.updated_at = utcnow()
            return self.users[user_id]

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", detail={"user_id": user_id}
                )
            user.password_hash = password_hash
            user.updated_at = utcnow()

    # refresh tokens
    def _insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        if token.user_id not in self.users:
            raise ConstraintViolation(
                "refresh token owner does not exist",
                field="user_id",
                detail={"user_id": token.user_id},
            )
        if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
            raise ConstraintViolation("token hash already exists", field="token_hash")
        self.refresh_tokens[token.id] = token
        return token

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._mutation():
            self._insert_refresh_token(token)
        return token

    def _find_active(self, token_hash: str) -> Optional[RefreshToken]:
        now = utcnow()
        for token in self.refresh_tokens.values():
            if token.token_hash == token_hash and token.is_active(now):
                return token
        return None

    def get_active_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._locked():
            return self._find_active(token_hash)

    def rotate_refresh_token(
        self, old_token_hash: str, replacement: RefreshToken
    ) -> Optional[RefreshToken]:
        with self._locked():
            current = self._find_active(old_token_hash)
            if current is None:
                return None
            if replacement.user_id != current.user_id:
                raise StorageError(
                    "replacement token belongs to a different user",
                    {"user_id": current.user_id},
                )
            with self._mutation():
                self.refresh_tokens[current.id].revoked = True
                self._insert_refresh_token(replacement)
            return replacement

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._locked():
            live = [
                token_id
                for token_id, token in self.refresh_tokens.items()
                if token.user_id == user_id and not token.revoked
            ]
            if not live:
                return 0
            with self._mutation():
                for token_id in live:
                    self.refresh_tokens[token_id].revoked = True
            return len(live)

    def delete_expired_refresh_tokens(self) -> int:
        with self._locked():
            now = utcnow()
            expired = [
                token_id
                for token_id, token in self.refresh_tokens.items()
                if token.expires_at < now
            ]
            if not expired:
                return 0
            with self._mutation():
                for token_id in expired:
                    del self.refresh_tokens[token_id]
            return len(expired)

    def list_refresh_tokens(
        self, user_id: str, *, include_revoked: bool = True
    ) -> List[RefreshToken]:
        with self._locked():
            tokens = [
                t
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and (include_revoked or not t.revoked)
            ]
        return sorted(tokens, key=lambda t: t.created_at)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            # Readers and restarts only ever see a complete snapshot
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".auth_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            raise StorageError(f"corrupt state snapshot at {path}: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            username=data.get("username"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "revoked": token.revoked,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
        )

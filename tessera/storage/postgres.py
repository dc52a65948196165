from __future__ import annotations

import contextlib
import uuid
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation, StorageError, StoreUnavailable
from tessera.storage.models import RefreshToken, User, utcnow

# Unique constraint name -> offending column
_CONSTRAINT_FIELDS = {
    "users_email_key": "email",
    "users_username_key": "username",
    "refresh_tokens_token_hash_key": "token_hash",
    "refresh_tokens_user_id_fkey": "user_id",
}

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        username TEXT,
        first_name TEXT,
        last_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT users_email_key UNIQUE (email),
        CONSTRAINT users_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        CONSTRAINT refresh_tokens_token_hash_key UNIQUE (token_hash),
        CONSTRAINT refresh_tokens_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES users (id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_token_hash ON refresh_tokens (token_hash)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens (user_id)",
)

_USER_COLUMNS = (
    "id, email, password_hash, username, first_name, last_name, is_active, "
    "created_at, updated_at"
)
_TOKEN_COLUMNS = "id, user_id, token_hash, expires_at, created_at, revoked"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def constraint_field(exc: errors.IntegrityError) -> Optional[str]:
    """Map a driver integrity error to the column it concerns, if known."""

    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag is not None else None
    if not name:
        return None
    return _CONSTRAINT_FIELDS.get(name)


class PostgresStore:
    """Postgres-backed users and refresh tokens over a psycopg connection pool.

    ``timeout_seconds`` bounds both waiting for a pooled connection and each
    statement on the server. Timeouts and connection failures surface as
    ``StoreUnavailable``; unique violations as ``ConstraintViolation``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        pool: Any = None,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(int(timeout_seconds * 1000), 1)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", timeout=self.timeout_seconds)
            raise StoreUnavailable(
                "database connection not available in time",
                {"timeout_seconds": self.timeout_seconds},
            ) from exc
        except errors.QueryCanceled as exc:
            self.logger.error("postgres_statement_timeout", error=str(exc))
            raise StoreUnavailable("database statement timed out") from exc
        except errors.UniqueViolation as exc:
            field = constraint_field(exc)
            raise ConstraintViolation(
                f"{field or 'value'} already exists", field=field
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row does not exist", field=constraint_field(exc)
            ) from exc
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc
        except errors.Error as exc:
            self.logger.error("postgres_error", error=str(exc))
            raise StorageError("database error") from exc

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``refresh_tokens`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            username=row.get("username"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            revoked=bool(row.get("revoked", False)),
        )

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
        user_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO users (id, email, password_hash, username, first_name, last_name)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (user_id, email, password_hash, username, first_name, last_name),
            ).fetchone()
        return self._user_from_row(row)

    def _fetch_user(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {column} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def touch_user(self, user_id: str) -> None:
        if not _is_uuid(user_id):
            return
        with self._connect() as conn:
            conn.execute("UPDATE users SET updated_at = now() WHERE id = %s", (user_id,))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET is_active = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (is_active, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        updated = 0
        if _is_uuid(user_id):
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                    (password_hash, user_id),
                )
                updated = cur.rowcount or 0
        if not updated:
            raise ConstraintViolation(
                "user not found for credentials", detail={"user_id": user_id}
            )

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, created_at, revoked)
                VALUES (%s, %s, %s, %s, %s, FALSE)
                RETURNING {_TOKEN_COLUMNS}
                """,
                (
                    token.id,
                    token.user_id,
                    token.token_hash,
                    token.expires_at,
                    token.created_at,
                ),
            ).fetchone()
        return self._token_from_row(row)

    def get_active_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM refresh_tokens
                WHERE token_hash = %s AND revoked = FALSE AND expires_at > now()
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._token_from_row(row)

    def rotate_refresh_token(
        self, old_token_hash: str, replacement: RefreshToken
    ) -> Optional[RefreshToken]:
        """Revoke the active token and insert ``replacement`` in one transaction.

        The conditional UPDATE matches at most one row; a concurrent caller
        presenting the same token sees zero rows and gets ``None``.
        """

        with self._connect() as conn:
            with conn.transaction():
                revoked = conn.execute(
                    """
                    UPDATE refresh_tokens SET revoked = TRUE
                    WHERE token_hash = %s AND revoked = FALSE AND expires_at > now()
                    RETURNING user_id
                    """,
                    (old_token_hash,),
                ).fetchone()
                if not revoked:
                    return None
                if str(revoked["user_id"]) != str(replacement.user_id):
                    raise StorageError(
                        "replacement token belongs to a different user",
                        {"user_id": str(revoked["user_id"])},
                    )
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, created_at, revoked)
                    VALUES (%s, %s, %s, %s, %s, FALSE)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (
                        replacement.id,
                        replacement.user_id,
                        replacement.token_hash,
                        replacement.expires_at,
                        replacement.created_at,
                    ),
                ).fetchone()
        return self._token_from_row(row)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_tokens SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return cur.rowcount or 0

    def delete_expired_refresh_tokens(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_tokens WHERE expires_at < now()")
            return cur.rowcount or 0

    def list_refresh_tokens(
        self, user_id: str, *, include_revoked: bool = True
    ) -> List[RefreshToken]:
        if not _is_uuid(user_id):
            return []
        query = f"SELECT {_TOKEN_COLUMNS} FROM refresh_tokens WHERE user_id = %s"
        if not include_revoked:
            query += " AND revoked = FALSE"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._token_from_row(row) for row in rows]

    def close(self) -> None:
        self.pool.close()

from __future__ import annotations

import contextlib
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Iterator, Optional, Protocol

from tessera.logging import get_logger
from tessera.service.errors import (
    AccountDeactivatedError,
    InternalError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from tessera.service.passwords import PasswordHasher
from tessera.service.refresh_tokens import RefreshTokenManager, RefreshTokenStore
from tessera.service.tokens import AccessClaims, TokenIssuer
from tessera.service.validation import CredentialValidator
from tessera.storage.errors import ConstraintViolation, StorageError
from tessera.storage.models import User

logger = get_logger(__name__)

REGISTERED_MESSAGE = "User registered successfully"
DUPLICATE_EMAIL_MESSAGE = "User with this email already exists"
DUPLICATE_USERNAME_MESSAGE = "Username is already taken"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def touch_user(self, user_id: str) -> None: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...


class SessionStore(UserStore, RefreshTokenStore, Protocol):
    """One backend serves both users and refresh tokens."""


@dataclass
class Registration:
    user_id: str
    email: str
    message: str = REGISTERED_MESSAGE


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class UserProfile:
    id: str
    email: str
    username: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    is_active: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            is_active=user.is_active,
            created_at=user.created_at,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class SessionService:
    """Register, login, refresh, logout and profile lookup over one store.

    Validation-class failures surface as ``ServiceError`` subclasses with a
    caller-facing message. Anything the store raises other than a uniqueness
    violation is logged here and re-raised as an opaque ``InternalError``.
    """

    def __init__(
        self,
        store: SessionStore,
        issuer: TokenIssuer,
        refresh_tokens: RefreshTokenManager,
        *,
        hasher: Optional[PasswordHasher] = None,
        validator: Optional[CredentialValidator] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.hasher = hasher or PasswordHasher()
        self.validator = validator or CredentialValidator()
        self.logger = logger

    @contextlib.contextmanager
    def _storage_guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StorageError as exc:
            self.logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            raise InternalError() from exc

    def register(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Registration:
        self.validator.validate_registration(email, password, username)

        with self._storage_guard("register"):
            if self.store.get_user_by_email(email) is not None:
                raise ValidationError(DUPLICATE_EMAIL_MESSAGE, field="email")
            if username is not None and self.store.get_user_by_username(username):
                raise ValidationError(DUPLICATE_USERNAME_MESSAGE, field="username")

            password_hash = self.hasher.hash(password)
            try:
                user = self.store.create_user(
                    email,
                    password_hash,
                    username=username,
                    first_name=first_name,
                    last_name=last_name,
                )
            except ConstraintViolation as exc:
                # Lost a concurrent registration race on a unique column
                self.logger.info("register_constraint_violation", field=exc.field)
                if exc.field == "username":
                    raise ValidationError(
                        DUPLICATE_USERNAME_MESSAGE, field="username"
                    ) from exc
                raise ValidationError(DUPLICATE_EMAIL_MESSAGE, field="email") from exc

        self.logger.info("user_registered", user_id=user.id)
        return Registration(user_id=user.id, email=user.email)

    def login(self, email: str, password: str) -> TokenPair:
        with self._storage_guard("login"):
            user = self.store.get_user_by_email(email)
            if user is None:
                self.hasher.verify_dummy(password)
                self.logger.info("login_failed", reason="unknown_account")
                raise InvalidCredentialsError()
            if not self.hasher.verify(password, user.password_hash):
                self.logger.info("login_failed", reason="bad_password", user_id=user.id)
                raise InvalidCredentialsError()
            if not user.is_active:
                self.logger.info("login_rejected_inactive", user_id=user.id)
                raise AccountDeactivatedError()

            self._maybe_rehash(user, password)
            pair = self._issue_pair(user)
            self.store.touch_user(user.id)

        self.logger.info("login_succeeded", user_id=user.id)
        return pair

    def _maybe_rehash(self, user: User, password: str) -> None:
        if not self.hasher.needs_rehash(user.password_hash):
            return
        try:
            self.store.update_password_hash(user.id, self.hasher.hash(password))
        except StorageError as exc:
            # The old hash still verifies; the upgrade is retried on next login
            self.logger.warning(
                "password_rehash_failed", user_id=user.id, error=str(exc)
            )
            return
        self.logger.info("password_rehashed", user_id=user.id)

    def _issue_pair(self, user: User) -> TokenPair:
        access_token = self.issuer.issue_access_token(user.id, user.email)
        refresh_token = self.refresh_tokens.issue(user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.issuer.access_ttl_seconds,
        )

    def refresh(self, raw_refresh_token: str) -> TokenPair:
        with self._storage_guard("refresh"):
            record = self.refresh_tokens.find_active(raw_refresh_token)
            if record is None:
                self.logger.info("refresh_rejected")
                raise InvalidRefreshTokenError()
            user = self.store.get_user(record.user_id)
            if user is None:
                self.logger.warning("refresh_token_orphaned", record_id=record.id)
                raise InvalidRefreshTokenError()
            if not user.is_active:
                self.logger.info("refresh_rejected_inactive", user_id=user.id)
                raise AccountDeactivatedError()

            new_refresh_token = self.refresh_tokens.rotate(record)

        access_token = self.issuer.issue_access_token(user.id, user.email)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_in=self.issuer.access_ttl_seconds,
        )

    def logout(self, user_id: str) -> int:
        with self._storage_guard("logout"):
            revoked = self.refresh_tokens.revoke_all(user_id)
        self.logger.info("user_logged_out", user_id=user_id, revoked=revoked)
        return revoked

    def get_profile(self, user_id: str) -> UserProfile:
        with self._storage_guard("get_profile"):
            user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return UserProfile.from_user(user)

    def authenticate(self, authorization: Optional[str]) -> AccessClaims:
        """Resolve an ``Authorization: Bearer`` header into verified claims."""

        token = extract_bearer(authorization)
        if token is None:
            raise InvalidTokenError("Missing bearer token")
        return self.issuer.verify_access_token(token)

    def purge_expired_tokens(self) -> int:
        with self._storage_guard("purge_expired_tokens"):
            return self.refresh_tokens.purge_expired()

    def set_active(self, user_id: str, is_active: bool) -> UserProfile:
        with self._storage_guard("set_active"):
            user = self.store.set_user_active(user_id, is_active)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info("user_active_changed", user_id=user_id, is_active=is_active)
        return UserProfile.from_user(user)

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every subclass carries a stable ``error_code``. The HTTP layer turns codes
    into status codes (see ``tessera.api.error_handling.status_for_error``);
    nothing in the service layer knows about HTTP.
    """

    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input was rejected; ``field`` names the offending input when known."""

    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        merged = dict(detail or {})
        if field is not None:
            merged.setdefault("field", field)
        super().__init__(message, detail=merged, error_code=error_code)
        self.field = field


class InvalidCredentialsError(ValidationError):
    """Unknown email or wrong password; the two are never distinguished."""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDeactivatedError(ValidationError):
    error_code = "account_deactivated"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(ServiceError):
    """Unknown, expired, revoked or already-rotated refresh token."""

    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenVerificationError(ServiceError):
    """Base for access-token verification failures."""

    error_code = "invalid_token"


class TokenExpiredError(TokenVerificationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Access token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(TokenVerificationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found."""

    error_code = "not_found"


class InternalError(ServiceError):
    """Opaque failure; details are logged, never returned."""

    error_code = "server_error"

    def __init__(self, message: str = "Internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountDeactivatedError",
    "InvalidRefreshTokenError",
    "TokenVerificationError",
    "TokenExpiredError",
    "InvalidTokenError",
    "NotFoundError",
    "InternalError",
]

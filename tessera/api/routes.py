from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from tessera.api.schemas import (
    LoginRequest,
    LogoutResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserProfileResponse,
)
from tessera.service.runtime import get_runtime
from tessera.service.sessions import TokenPair
from tessera.service.tokens import AccessClaims

router = APIRouter(prefix="/auth", tags=["auth"])


def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Verify the bearer access token; failures raise token errors (401)."""

    return get_runtime().sessions.authenticate(authorization)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(body: RegisterRequest):
    """Create an account.

    Raises:
        400: malformed email, weak password, bad username, or duplicate email/username
    """
    runtime = get_runtime()
    registration = runtime.sessions.register(
        body.email,
        body.password,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return RegisterResponse(
        user_id=registration.user_id,
        email=registration.email,
        message=registration.message,
    )


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: unknown email or wrong password (indistinguishable)
        403: account is deactivated
    """
    runtime = get_runtime()
    return _token_response(runtime.sessions.login(body.email, body.password))


@router.post("/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest):
    """Rotate a refresh token. The presented token stops working immediately."""
    runtime = get_runtime()
    return _token_response(runtime.sessions.refresh(body.refresh_token))


@router.post("/logout", response_model=LogoutResponse)
def logout(claims: AccessClaims = Depends(get_claims)):
    """Revoke every refresh token of the caller ("sign out everywhere").

    Access tokens already issued stay valid until they expire.
    """
    runtime = get_runtime()
    revoked = runtime.sessions.logout(claims.user_id)
    return LogoutResponse(status="ok", revoked=revoked)


@router.get("/me", response_model=UserProfileResponse)
def get_current_user(claims: AccessClaims = Depends(get_claims)):
    runtime = get_runtime()
    profile = runtime.sessions.get_profile(claims.user_id)
    return UserProfileResponse(**profile.to_dict())

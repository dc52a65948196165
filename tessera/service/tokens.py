from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tessera.config import TokenConfig
from tessera.logging import get_logger
from tessera.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_REQUIRED_CLAIMS = ("sub", "email", "iat", "exp", "jti")


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    iat: int
    exp: int
    jti: str

    @property
    def user_id(self) -> str:
        return self.sub


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Issues and verifies self-contained HS256 access tokens.

    Nothing is stored server-side: a token is valid while its signature
    checks out and ``exp`` has not passed. ``jti`` is embedded but not
    tracked, so an access token cannot be revoked before it expires.
    """

    def __init__(
        self, config: TokenConfig, *, clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.config = config
        self._clock = clock or time.time

    @property
    def access_ttl_seconds(self) -> int:
        return self.config.access_token_ttl_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.config.secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header_enc = _encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user_id: str, email: str) -> str:
        iat = int(self._clock())
        payload = {
            "sub": str(user_id),
            "email": email,
            "iat": iat,
            "exp": iat + self.config.access_token_ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> AccessClaims:
        if not isinstance(token, str):
            raise InvalidTokenError()
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError()
        header_b64, payload_b64, sig_b64 = parts

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise InvalidTokenError()

        exp = payload["exp"]
        iat = payload["iat"]
        # bool is an int subclass but never a timestamp
        if (
            isinstance(exp, bool)
            or isinstance(iat, bool)
            or not isinstance(exp, (int, float))
            or not isinstance(iat, (int, float))
        ):
            raise InvalidTokenError()
        if not isinstance(payload["sub"], str) or not isinstance(payload["jti"], str):
            raise InvalidTokenError()
        if not isinstance(payload["email"], str):
            raise InvalidTokenError()

        if exp < self._clock():
            raise TokenExpiredError()

        return AccessClaims(
            sub=payload["sub"],
            email=payload["email"],
            iat=int(iat),
            exp=int(exp),
            jti=payload["jti"],
        )

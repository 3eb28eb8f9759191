"""CLI session token issuance and verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import uuid4

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from gateway.config import get_settings
from gateway.errors import ErrorCode, GatewayError

JWT_ALGORITHM = "RS256"
SESSION_TOKEN_TYPE = "cli_session"


class TokenValidationError(GatewayError):
    """Raised when a session token fails signature, expiry, or claim checks."""


@dataclass(frozen=True)
class IssuedToken:
    """Signed session token with its absolute expiry."""

    token: str
    expires_at: datetime


class JWTService:
    """Issue and verify RS256 session tokens bound to a device session."""

    def __init__(self, private_key_pem: str, public_key_pem: str) -> None:
        self._private_key_pem = private_key_pem
        self._public_key_pem = public_key_pem
        self._kid = self.calculate_kid(public_key_pem)

    def issue_session_token(self, device_session_id: str, expires_in_seconds: int) -> IssuedToken:
        """Issue a signed session token carrying the device session claim."""
        issued_at = datetime.now(UTC)
        expires_at = issued_at + timedelta(seconds=expires_in_seconds)
        payload = {
            "jti": str(uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "sub": device_session_id,
            "type": SESSION_TOKEN_TYPE,
            "device_session_id": device_session_id,
        }
        token = jwt.encode(
            payload,
            self._private_key_pem,
            algorithm=JWT_ALGORITHM,
            headers={"kid": self._kid},
        )
        return IssuedToken(token=token, expires_at=expires_at)

    def verify_token(self, token: str) -> dict[str, Any]:
        """Verify signature, expiry, and session claims; never touches the store."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", ErrorCode.TOKEN_INVALID) from exc
        algorithm = str(header.get("alg", ""))
        if not hmac.compare_digest(algorithm, JWT_ALGORITHM):
            raise TokenValidationError("Invalid token algorithm.", ErrorCode.TOKEN_INVALID)

        try:
            payload = jwt.decode(
                token,
                self._public_key_pem,
                algorithms=[JWT_ALGORITHM],
                options={
                    "verify_aud": False,
                    "require_jti": True,
                    "require_iat": True,
                    "require_exp": True,
                    "require_sub": True,
                },
            )
        except ExpiredSignatureError as exc:
            raise TokenValidationError("Token has expired.", ErrorCode.TOKEN_EXPIRED) from exc
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", ErrorCode.TOKEN_INVALID) from exc

        token_type = str(payload.get("type", ""))
        if not hmac.compare_digest(token_type, SESSION_TOKEN_TYPE):
            raise TokenValidationError("Invalid token type.", ErrorCode.TOKEN_INVALID)
        device_session_id = payload.get("device_session_id")
        if not isinstance(device_session_id, str) or not device_session_id:
            raise TokenValidationError("Invalid token.", ErrorCode.TOKEN_INVALID)
        return payload

    @staticmethod
    def calculate_kid(public_key_pem: str) -> str:
        """Derive a deterministic key ID from the public key."""
        digest = hashlib.sha256(public_key_pem.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest[:16]).rstrip(b"=").decode("ascii")


@lru_cache
def get_jwt_service() -> JWTService:
    """Build and cache the JWT service from application settings."""
    settings = get_settings()
    return JWTService(
        private_key_pem=settings.jwt.private_key_pem.get_secret_value(),
        public_key_pem=settings.jwt.public_key_pem.get_secret_value(),
    )

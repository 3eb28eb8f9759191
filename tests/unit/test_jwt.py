"""Unit tests for session token issuance and verification."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from jose import jwt as jose_jwt

from gateway.core.jwt import JWTService, TokenValidationError
from gateway.errors import ErrorCode


def test_issue_and_verify_session_token(jwt_service: JWTService) -> None:
    """Issued session token carries the device session claim and verifies."""
    issued = jwt_service.issue_session_token("kaysession_1_abc", expires_in_seconds=60)
    payload = jwt_service.verify_token(issued.token)

    assert payload["sub"] == "kaysession_1_abc"
    assert payload["device_session_id"] == "kaysession_1_abc"
    assert payload["type"] == "cli_session"
    assert isinstance(payload["jti"], str)
    assert payload["exp"] > int(datetime.now(UTC).timestamp())
    assert int(issued.expires_at.timestamp()) == payload["exp"]


def test_session_token_header_carries_kid(jwt_service: JWTService, rsa_keypair) -> None:
    """Key id header is derived from the public key."""
    issued = jwt_service.issue_session_token("kaysession_1_abc", expires_in_seconds=60)

    header = jose_jwt.get_unverified_header(issued.token)

    assert header["alg"] == "RS256"
    assert header["kid"] == JWTService.calculate_kid(rsa_keypair[1])


def test_verify_token_rejects_expired(jwt_service: JWTService) -> None:
    """Expired token fails with TOKEN_EXPIRED."""
    issued = jwt_service.issue_session_token("kaysession_1_abc", expires_in_seconds=-1)

    with pytest.raises(TokenValidationError) as exc_info:
        jwt_service.verify_token(issued.token)

    assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED
    assert exc_info.value.status_code == 401


def test_verify_token_rejects_tampered_token(jwt_service: JWTService) -> None:
    """Tampered token fails signature validation."""
    issued = jwt_service.issue_session_token("kaysession_1_abc", expires_in_seconds=60)
    header, payload, signature = issued.token.split(".")
    tampered_payload = ("a" if payload[0] != "a" else "b") + payload[1:]
    tampered = ".".join([header, tampered_payload, signature])

    with pytest.raises(TokenValidationError) as exc_info:
        jwt_service.verify_token(tampered)

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID
    assert exc_info.value.status_code == 403


def test_verify_token_rejects_malformed_token(jwt_service: JWTService) -> None:
    """Garbage input is reported as invalid rather than raising a library error."""
    with pytest.raises(TokenValidationError) as exc_info:
        jwt_service.verify_token("not-a-jwt")

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID


def test_verify_token_rejects_foreign_token_type(jwt_service: JWTService, rsa_keypair) -> None:
    """A correctly signed token of another type is not a session token."""
    now = int(datetime.now(UTC).timestamp())
    token = jose_jwt.encode(
        {
            "jti": "j1",
            "iat": now,
            "exp": now + 60,
            "sub": "kaysession_1_abc",
            "type": "access",
            "device_session_id": "kaysession_1_abc",
        },
        rsa_keypair[0],
        algorithm="RS256",
    )

    with pytest.raises(TokenValidationError) as exc_info:
        jwt_service.verify_token(token)

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID


def test_verify_token_rejects_hs256_downgrade(jwt_service: JWTService) -> None:
    """Symmetric-algorithm tokens are rejected before signature checks."""
    token = jose_jwt.encode({"sub": "x", "type": "cli_session"}, "secret", algorithm="HS256")

    with pytest.raises(TokenValidationError) as exc_info:
        jwt_service.verify_token(token)

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID

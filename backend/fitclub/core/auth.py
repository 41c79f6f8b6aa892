"""Verification of bearer tokens issued by the hosted identity provider."""

from typing import Any

from jose import jwt

from fitclub.config import settings


def decode_token(token: str) -> dict[str, Any]:
    """Decode and verify an identity-provider access token. Raises jose.JWTError when invalid."""
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience or None,
        options={"verify_aud": bool(settings.jwt_audience)},
    )


def create_access_token(claims: dict[str, Any]) -> str:
    """Sign claims with the shared secret (used by tests and local tooling)."""
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

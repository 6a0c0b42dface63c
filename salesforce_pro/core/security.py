from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from werkzeug.security import check_password_hash, generate_password_hash

from salesforce_pro.core.config import get_settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenError(Exception):
    pass


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    return check_password_hash(password_hash, password)


def _encode(claims: dict[str, Any], *, token_type: str, secret: str, lifetime: timedelta) -> str:
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    payload = {
        **claims,
        "type": token_type,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, *, token_type: str, secret: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise TokenError(str(exc)) from exc
    if payload.get("type") != token_type or not payload.get("sub"):
        raise TokenError("unexpected token type")
    return payload


def token_claims(*, user_id: str, email: str, role: str, region: str) -> dict[str, Any]:
    return {"sub": user_id, "email": email, "role": role, "region": region}


def create_access_token(claims: dict[str, Any]) -> str:
    settings = get_settings()
    return _encode(
        claims,
        token_type=ACCESS_TOKEN_TYPE,
        secret=settings.jwt_access_secret,
        lifetime=timedelta(minutes=settings.access_token_minutes),
    )


def create_refresh_token(claims: dict[str, Any]) -> str:
    settings = get_settings()
    return _encode(
        claims,
        token_type=REFRESH_TOKEN_TYPE,
        secret=settings.jwt_refresh_secret,
        lifetime=timedelta(days=settings.refresh_token_days),
    )


def decode_access_token(token: str) -> dict[str, Any]:
    return _decode(token, token_type=ACCESS_TOKEN_TYPE, secret=get_settings().jwt_access_secret)


def decode_refresh_token(token: str) -> dict[str, Any]:
    return _decode(token, token_type=REFRESH_TOKEN_TYPE, secret=get_settings().jwt_refresh_secret)

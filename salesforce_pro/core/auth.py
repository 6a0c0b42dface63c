from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.requests import Request

from salesforce_pro.auth.models import User
from salesforce_pro.core.database import get_db
from salesforce_pro.core.security import TokenError, decode_access_token

ROLE_DIRETOR = "diretor"
ROLE_GERENTE = "gerente"
ROLE_VENDEDOR = "vendedor"


@dataclass
class AuthUser:
    id: uuid.UUID
    email: str
    role: str
    region: str

    @property
    def is_seller(self) -> bool:
        return self.role == ROLE_VENDEDOR


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(request: Request, db: Session = Depends(get_db)) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        raise _unauthorized("Not authenticated")

    try:
        payload = decode_access_token(token)
        user_id = uuid.UUID(str(payload["sub"]))
    except (TokenError, ValueError):
        raise _unauthorized("Invalid token") from None

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("Invalid token")

    request.state.user_id = str(user.id)
    return AuthUser(id=user.id, email=user.email, role=user.role, region=user.region)

from __future__ import annotations

import logging
import secrets
import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salesforce_pro.auth.models import User
from salesforce_pro.auth.schemas import (
    LoginResponse,
    PasswordResetResponse,
    RefreshResponse,
    UserCreate,
    UserProfile,
    UserRead,
)
from salesforce_pro.core.auth import AuthUser
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.security import (
    TokenError,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_password,
    token_claims,
    verify_password,
)
from salesforce_pro.metrics import observe_login_attempt


logger = logging.getLogger("salesforce_pro.auth")

INVALID_CREDENTIALS = "Invalid credentials"
TEMPORARY_PASSWORD_BYTES = 9


def _claims_for(user: User) -> dict[str, str]:
    return token_claims(user_id=str(user.id), email=user.email, role=user.role, region=user.region)


def _to_profile(user: User) -> UserProfile:
    return UserProfile.model_validate(
        {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "region": user.region,
            "is_active": user.is_active,
        }
    )


def _to_read(user: User) -> UserRead:
    return UserRead.model_validate(
        {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "region": user.region,
            "is_active": user.is_active,
            "created_at": user.created_at,
        }
    )


class AuthService:
    def login(self, session: Session, email: str, password: str) -> tuple[LoginResponse, str]:
        """Returns the login body and the refresh token to be stored in the cookie."""
        user = session.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))
        if user is None:
            observe_login_attempt("unknown_user")
            logger.info("auth.login_failed", extra={"email": email, "status": "unknown_user"})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)
        if not user.is_active:
            observe_login_attempt("inactive")
            logger.info("auth.login_failed", extra={"user_id": str(user.id), "status": "inactive"})
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive")
        if not verify_password(user.password_hash, password):
            observe_login_attempt("bad_password")
            logger.info("auth.login_failed", extra={"user_id": str(user.id), "status": "bad_password"})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)

        claims = _claims_for(user)
        observe_login_attempt("success")
        logger.info("auth.login", extra={"user_id": str(user.id)})
        body = LoginResponse(access_token=create_access_token(claims), user=_to_profile(user))
        return body, create_refresh_token(claims)

    def refresh(self, session: Session, refresh_token: str | None) -> RefreshResponse:
        if not refresh_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token missing")
        try:
            payload = decode_refresh_token(refresh_token)
            user_id = uuid.UUID(str(payload["sub"]))
        except (TokenError, ValueError):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token") from None

        user = session.get(User, user_id)
        if user is None or not user.is_active:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")
        return RefreshResponse(access_token=create_access_token(_claims_for(user)))

    def me(self, session: Session, actor_user: AuthUser) -> UserProfile:
        user = session.get(User, actor_user.id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        return _to_profile(user)


class UserService:
    entity_type = "auth.user"

    def list_users(
        self,
        session: Session,
        actor_user: AuthUser,
        *,
        role: str | None = None,
        active: bool | None = None,
    ) -> list[UserRead]:
        stmt = select(User)
        if actor_user.is_seller:
            stmt = stmt.where(User.id == actor_user.id)
        if role:
            stmt = stmt.where(User.role == role)
        if active is not None:
            stmt = stmt.where(User.is_active == active)
        return [_to_read(user) for user in session.scalars(stmt.order_by(User.name.asc())).all()]

    def create_user(self, session: Session, actor_user: AuthUser, dto: UserCreate) -> UserRead:
        user = User(
            name=dto.name,
            email=dto.email.lower(),
            password_hash=hash_password(dto.password),
            role=dto.role,
            region=dto.region or get_settings().default_region,
            is_active=True,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="E-mail already registered") from None
        session.refresh(user)
        logger.info("user.created", extra={"user_id": str(user.id), "status": user.role})
        return _to_read(user)

    def update_role(self, session: Session, actor_user: AuthUser, user_id: uuid.UUID, role: str) -> UserRead:
        user = self._get(session, user_id)
        user.role = role
        session.commit()
        session.refresh(user)
        return _to_read(user)

    def set_activation(self, session: Session, actor_user: AuthUser, user_id: uuid.UUID, is_active: bool) -> UserRead:
        if user_id == actor_user.id and not is_active:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot deactivate yourself")
        user = self._get(session, user_id)
        user.is_active = is_active
        session.commit()
        session.refresh(user)
        logger.info("user.activation_changed", extra={"user_id": str(user.id), "status": str(is_active).lower()})
        return _to_read(user)

    def reset_password(self, session: Session, actor_user: AuthUser, user_id: uuid.UUID) -> PasswordResetResponse:
        user = self._get(session, user_id)
        temporary_password = secrets.token_urlsafe(TEMPORARY_PASSWORD_BYTES)
        user.password_hash = hash_password(temporary_password)
        session.commit()
        logger.info("user.password_reset", extra={"user_id": str(user.id)})
        return PasswordResetResponse(user_id=user.id, temporary_password=temporary_password)

    def _get(self, session: Session, user_id: uuid.UUID) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        return user

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from salesforce_pro.auth.schemas import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    PasswordResetResponse,
    RefreshResponse,
    UserActivationUpdate,
    UserCreate,
    UserProfile,
    UserRead,
    UserRoleUpdate,
)
from salesforce_pro.auth.service import AuthService, UserService
from salesforce_pro.core.auth import ROLE_DIRETOR, ROLE_GERENTE, AuthUser, get_current_user
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.database import get_db
from salesforce_pro.core.errors import error_response
from salesforce_pro.core.rbac import ensure_role

auth_router = APIRouter(prefix="/auth", tags=["auth"])
users_router = APIRouter(prefix="/users", tags=["auth.users"])
auth_service = AuthService()
user_service = UserService()


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@auth_router.post("/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    dto: LoginRequest,
    db: Session = Depends(get_db),
) -> LoginResponse | JSONResponse:
    settings = get_settings()
    try:
        body, refresh_token = auth_service.login(db, dto.email, dto.password)
    except HTTPException as exc:
        return _failed(request, exc, "auth_login_failed")

    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=settings.refresh_token_days * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
        secure=settings.refresh_cookie_secure,
    )
    return body


@auth_router.post("/refresh", response_model=RefreshResponse)
def refresh(request: Request, db: Session = Depends(get_db)) -> RefreshResponse | JSONResponse:
    try:
        return auth_service.refresh(db, request.cookies.get(get_settings().refresh_cookie_name))
    except HTTPException as exc:
        return _failed(request, exc, "auth_refresh_failed")


@auth_router.get("/me", response_model=UserProfile)
def me(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UserProfile | JSONResponse:
    try:
        return auth_service.me(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "auth_me_failed")


@auth_router.post("/logout", response_model=LogoutResponse)
def logout(response: Response) -> LogoutResponse:
    response.delete_cookie(get_settings().refresh_cookie_name)
    return LogoutResponse(message="Logged out")


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    role: str | None = Query(default=None),
    active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.list_users(db, user, role=role, active=active)
    except HTTPException as exc:
        return _failed(request, exc, "user_list_failed")


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        ensure_role(user, ROLE_DIRETOR)
        return user_service.create_user(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "user_create_failed")


@users_router.patch("/{user_id}/role", response_model=UserRead)
def update_user_role(
    request: Request,
    user_id: uuid.UUID,
    dto: UserRoleUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        ensure_role(user, ROLE_DIRETOR)
        return user_service.update_role(db, user, user_id, dto.role)
    except HTTPException as exc:
        return _failed(request, exc, "user_role_update_failed")


@users_router.patch("/{user_id}/activation", response_model=UserRead)
def update_user_activation(
    request: Request,
    user_id: uuid.UUID,
    dto: UserActivationUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        ensure_role(user, ROLE_DIRETOR, ROLE_GERENTE)
        return user_service.set_activation(db, user, user_id, dto.is_active)
    except HTTPException as exc:
        return _failed(request, exc, "user_activation_update_failed")


@users_router.post("/{user_id}/reset-password", response_model=PasswordResetResponse)
def reset_user_password(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> PasswordResetResponse | JSONResponse:
    try:
        ensure_role(user, ROLE_DIRETOR)
        return user_service.reset_password(db, user, user_id)
    except HTTPException as exc:
        return _failed(request, exc, "user_password_reset_failed")

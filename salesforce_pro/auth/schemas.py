from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import EmailStr, Field

from salesforce_pro.crm.schemas import CamelModel, Name, OptionalText

Role = Literal["diretor", "gerente", "vendedor"]


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserProfile(CamelModel):
    id: UUID
    name: str
    email: str
    role: Role
    region: str
    is_active: bool = True


class LoginResponse(CamelModel):
    access_token: str
    user: UserProfile


class RefreshResponse(CamelModel):
    access_token: str


class LogoutResponse(CamelModel):
    message: str


class UserRead(UserProfile):
    created_at: datetime


class UserCreate(CamelModel):
    name: Name
    email: EmailStr
    password: str = Field(min_length=6)
    role: Role = "vendedor"
    region: OptionalText = None


class UserRoleUpdate(CamelModel):
    role: Role


class UserActivationUpdate(CamelModel):
    is_active: bool


class PasswordResetResponse(CamelModel):
    user_id: UUID
    temporary_password: str

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, model_validator

from app.identity.models import User
from app.identity.sessions import TokenPair
from app.platform.security.roles import UserRole


PasswordStatus = Literal["NOT_APPLICABLE", "PENDING", "SET"]


def password_status_for(user: User) -> PasswordStatus:
    if user.role == UserRole.SALESPERSON:
        return "NOT_APPLICABLE"
    return "SET" if user.credential_hash else "PENDING"


class PublicUser(BaseModel):
    id: UUID
    company_id: UUID | None
    role: UserRole
    display_name: str
    email: str | None
    password_status: PasswordStatus

    @classmethod
    def from_user(cls, user: User) -> PublicUser:
        return cls(
            id=user.id,
            company_id=user.company_id,
            role=user.role,
            display_name=user.full_name,
            email=user.email,
            password_status=password_status_for(user),
        )


class UserRead(PublicUser):
    phone: str
    manager_id: UUID | None
    supervisor_id: UUID | None
    is_active: bool
    deleted_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> UserRead:
        return cls(
            id=user.id,
            company_id=user.company_id,
            role=user.role,
            display_name=user.full_name,
            email=user.email,
            password_status=password_status_for(user),
            phone=user.phone,
            manager_id=user.manager_id,
            supervisor_id=user.supervisor_id,
            is_active=user.is_active,
            deleted_at=user.deleted_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenPairRead(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> TokenPairRead:
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthSessionRead(BaseModel):
    user: PublicUser
    tokens: TokenPairRead


class ActivationInviteRead(BaseModel):
    user_id: UUID
    email: str
    expires_at: datetime
    activation_token: str | None = None


class OkResponse(BaseModel):
    ok: bool = True


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)


class ActivateAccountRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=6, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=6, max_length=256)


class ResendActivationRequest(BaseModel):
    user_id: UUID


class BootstrapAdminRequest(BaseModel):
    full_name: str = Field(min_length=2, max_length=255)
    email: EmailStr
    phone: str = Field(min_length=8, max_length=32)
    password: str = Field(min_length=6, max_length=256)


class UpdateMeRequest(BaseModel):
    full_name: str | None = Field(default=None, min_length=2, max_length=255)
    email: EmailStr | None = None
    new_password: str | None = Field(default=None, min_length=6, max_length=256)


class UserCreate(BaseModel):
    company_id: UUID | None = None
    role: UserRole
    full_name: str = Field(min_length=2, max_length=255)
    email: EmailStr | None = None
    phone: str = Field(min_length=8, max_length=32)
    password: str | None = Field(default=None, min_length=6, max_length=256)
    manager_id: UUID | None = None
    supervisor_id: UUID | None = None


class UserUpdate(BaseModel):
    """Partial update. Omitted fields stay untouched; an explicit ``null`` clears the field."""

    company_id: UUID | None = None
    role: UserRole | None = None
    full_name: str | None = Field(default=None, min_length=2, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, min_length=8, max_length=32)
    password: str | None = Field(default=None, min_length=6, max_length=256)
    is_active: bool | None = None
    manager_id: UUID | None = None
    supervisor_id: UUID | None = None

    @model_validator(mode="after")
    def _require_some_field(self) -> UserUpdate:
        if not self.model_fields_set:
            raise ValueError("provide at least one field to update")
        return self


class UserCreatedRead(BaseModel):
    user: UserRead
    activation: ActivationInviteRead | None = None


class PageMeta(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class UserPage(BaseModel):
    items: list[UserRead]
    meta: PageMeta


class ReassignSupervisorRequest(BaseModel):
    from_supervisor_id: UUID
    to_supervisor_id: UUID


class ReassignSupervisorRead(BaseModel):
    from_supervisor_id: UUID
    to_supervisor_id: UUID
    company_id: UUID
    moved_salespeople: int


class ReassignManagerTeamRequest(BaseModel):
    from_manager_id: UUID
    to_manager_id: UUID


class ReassignManagerTeamRead(BaseModel):
    from_manager_id: UUID
    to_manager_id: UUID
    company_id: UUID
    supervisors_moved: int
    salespeople_impacted: int

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.core.auth import get_current_user
from app.core.database import get_db
from app.core.rbac import require_roles
from app.identity.schemas import (
    ActivateAccountRequest,
    ActivationInviteRead,
    AuthSessionRead,
    BootstrapAdminRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    OkResponse,
    PublicUser,
    ReassignManagerTeamRead,
    ReassignManagerTeamRequest,
    ReassignSupervisorRead,
    ReassignSupervisorRequest,
    RefreshRequest,
    ResendActivationRequest,
    ResetPasswordRequest,
    UpdateMeRequest,
    UserCreate,
    UserCreatedRead,
    UserPage,
    UserRead,
    UserUpdate,
)
from app.identity.service import auth_service
from app.identity.sessions import DeviceMeta
from app.identity.users import user_admin_service
from app.platform.security.context import AuthContext
from app.platform.security.roles import UserRole

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])

_require_user_admin = require_roles(UserRole.ADMIN, UserRole.DIRECTOR, UserRole.MANAGER, UserRole.SUPERVISOR)
_require_supervisor_reassign = require_roles(UserRole.ADMIN, UserRole.DIRECTOR, UserRole.MANAGER)
_require_team_reassign = require_roles(UserRole.ADMIN)


def _device(request: Request) -> DeviceMeta:
    context = getattr(request.state, "context", None)
    if context is None:
        return DeviceMeta(user_agent=request.headers.get("user-agent"), ip_address=None)
    return DeviceMeta(user_agent=context.user_agent, ip_address=context.ip_address)


@auth_router.post("/login", response_model=AuthSessionRead)
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)) -> AuthSessionRead:
    return auth_service.login(db, email=payload.email, password=payload.password, device=_device(request))


@auth_router.post("/activate-account", response_model=AuthSessionRead)
def activate_account(
    payload: ActivateAccountRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AuthSessionRead:
    return auth_service.activate(db, token=payload.token, password=payload.password, device=_device(request))


@auth_router.post("/refresh", response_model=AuthSessionRead)
def refresh(payload: RefreshRequest, request: Request, db: Session = Depends(get_db)) -> AuthSessionRead:
    return auth_service.refresh(db, refresh_token=payload.refresh_token, device=_device(request))


@auth_router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(payload: LogoutRequest, db: Session = Depends(get_db)) -> Response:
    auth_service.logout(db, refresh_token=payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@auth_router.post("/forgot-password", response_model=OkResponse)
def forgot_password(payload: ForgotPasswordRequest, db: Session = Depends(get_db)) -> OkResponse:
    auth_service.forgot_password(db, email=payload.email)
    return OkResponse()


@auth_router.post("/reset-password", response_model=OkResponse)
def reset_password(payload: ResetPasswordRequest, db: Session = Depends(get_db)) -> OkResponse:
    auth_service.reset_password(db, token=payload.token, password=payload.password)
    return OkResponse()


@auth_router.post("/resend-activation", response_model=ActivationInviteRead)
def resend_activation(
    payload: ResendActivationRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_user_admin),
) -> ActivationInviteRead:
    return auth_service.resend_activation(db, ctx, payload.user_id)


@auth_router.post("/bootstrap-admin", response_model=AuthSessionRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(
    payload: BootstrapAdminRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AuthSessionRead:
    return auth_service.bootstrap_admin(db, payload, device=_device(request))


@auth_router.get("/me", response_model=PublicUser)
def get_me(db: Session = Depends(get_db), ctx: AuthContext = Depends(get_current_user)) -> PublicUser:
    return auth_service.get_me(db, ctx)


@auth_router.patch("/me", response_model=PublicUser)
def update_me(
    payload: UpdateMeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_user),
) -> PublicUser:
    return auth_service.update_me(db, ctx, payload)


@users_router.get("", response_model=UserPage)
def list_users(
    q: str | None = Query(default=None, max_length=255),
    company_id: uuid.UUID | None = None,
    role: UserRole | None = None,
    manager_id: uuid.UUID | None = None,
    supervisor_id: uuid.UUID | None = None,
    is_active: bool | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_user_admin),
) -> UserPage:
    return user_admin_service.list_users(
        db,
        ctx,
        q=q,
        company_id=company_id,
        role=role,
        manager_id=manager_id,
        supervisor_id=supervisor_id,
        is_active=is_active,
        page=page,
        page_size=page_size,
    )


@users_router.post("", response_model=UserCreatedRead, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_user_admin),
) -> UserCreatedRead:
    return user_admin_service.create_user(db, ctx, payload)


@users_router.post("/actions/reassign-supervisor", response_model=ReassignSupervisorRead)
def reassign_supervisor(
    payload: ReassignSupervisorRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_supervisor_reassign),
) -> ReassignSupervisorRead:
    return user_admin_service.reassign_supervisor(db, ctx, payload)


@users_router.post("/actions/reassign-manager-team", response_model=ReassignManagerTeamRead)
def reassign_manager_team(
    payload: ReassignManagerTeamRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_team_reassign),
) -> ReassignManagerTeamRead:
    return user_admin_service.reassign_manager_team(db, ctx, payload)


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_user_admin),
) -> UserRead:
    return user_admin_service.get_user(db, ctx, user_id)


@users_router.patch("/{user_id}", response_model=UserCreatedRead)
def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_user_admin),
) -> UserCreatedRead:
    return user_admin_service.update_user(db, ctx, user_id, payload)


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(_require_user_admin),
) -> Response:
    user_admin_service.delete_user(db, ctx, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

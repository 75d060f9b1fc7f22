from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.auth.schemas import (
    AuditLogRead,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    RoleUpdateRequest,
    TokenPairRead,
    UserRead,
    VerifyEmailRequest,
)
from app.auth.service import ClientInfo, auth_service
from app.core.auth import AuthUser, get_current_user
from app.core.context import get_request_context
from app.core.database import get_db
from app.core.rbac import require_roles
from app.services.audit import list_audit_logs


router = APIRouter(prefix="/api/auth", tags=["auth"])


def _client(request: Request) -> ClientInfo:
    context = get_request_context(request)
    return ClientInfo(ip_address=context.client_ip, user_agent=context.user_agent)


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(request: Request, dto: RegisterRequest, db: Session = Depends(get_db)) -> RegisterResponse:
    user = auth_service.register(db, dto, _client(request))
    return RegisterResponse(
        message="Registration successful. Please check your email to verify your account.",
        user=UserRead.model_validate(user),
    )


@router.post("/login", response_model=LoginResponse)
def login(request: Request, dto: LoginRequest, db: Session = Depends(get_db)) -> LoginResponse:
    result = auth_service.login(db, dto.email, dto.password, _client(request))
    return LoginResponse(
        user=UserRead.model_validate(result.user),
        tokens=TokenPairRead(access_token=result.tokens.access_token, refresh_token=result.tokens.refresh_token),
    )


@router.post("/refresh", response_model=TokenPairRead)
def refresh(request: Request, dto: RefreshRequest, db: Session = Depends(get_db)) -> TokenPairRead:
    tokens = auth_service.rotate_refresh_token(db, dto.refresh_token, _client(request))
    return TokenPairRead(access_token=tokens.access_token, refresh_token=tokens.refresh_token)


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    dto: LogoutRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageResponse:
    auth_service.logout(db, user.id, dto.refresh_token, _client(request))
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=MessageResponse)
def logout_all(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageResponse:
    auth_service.logout_all(db, user.id, _client(request))
    return MessageResponse(message="Logged out from all devices")


@router.get("/user", response_model=UserRead)
def current_user_profile(db: Session = Depends(get_db), user: AuthUser = Depends(get_current_user)) -> UserRead:
    return UserRead.model_validate(auth_service.get_user(db, user.id))


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    dto: ChangePasswordRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageResponse:
    auth_service.change_password(db, user.id, dto.current_password, dto.new_password, _client(request))
    return MessageResponse(message="Password changed. Please sign in again on your other devices.")


@router.post("/verify-email", response_model=UserRead)
def verify_email(request: Request, dto: VerifyEmailRequest, db: Session = Depends(get_db)) -> UserRead:
    return UserRead.model_validate(auth_service.verify_email(db, dto.token, _client(request)))


@router.post("/forgot-password", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def forgot_password(request: Request, dto: ForgotPasswordRequest, db: Session = Depends(get_db)) -> MessageResponse:
    auth_service.request_password_reset(db, dto.email, _client(request))
    return MessageResponse(message="If an account exists for that email, a reset link has been sent.")


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(request: Request, dto: ResetPasswordRequest, db: Session = Depends(get_db)) -> MessageResponse:
    auth_service.reset_password(db, dto.token, dto.password, _client(request))
    return MessageResponse(message="Password has been reset. Please sign in.")


@router.get("/audit-logs", response_model=list[AuditLogRead])
def audit_logs(
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[AuditLogRead]:
    return [AuditLogRead.model_validate(row) for row in list_audit_logs(db, user.id, limit=limit)]


@router.get("/users", response_model=list[UserRead])
def list_users(
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_roles("admin", "manager")),
) -> list[UserRead]:
    return [UserRead.model_validate(row) for row in auth_service.list_users(db)]


@router.patch("/users/{user_id}/role", response_model=UserRead)
def update_user_role(
    request: Request,
    user_id: uuid.UUID,
    dto: RoleUpdateRequest,
    db: Session = Depends(get_db),
    actor: AuthUser = Depends(require_roles("admin")),
) -> UserRead:
    return UserRead.model_validate(auth_service.update_role(db, actor.id, user_id, dto.role, _client(request)))

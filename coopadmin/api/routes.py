from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from coopadmin.api.schemas import (
    AcceptInviteRequest,
    AdminView,
    Envelope,
    InviteRequest,
    LoginRequest,
    LoginResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    UpdatePasswordRequest,
)
from coopadmin.logging import get_logger
from coopadmin.service.auth import AuthContext, normalize_email
from coopadmin.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _ok(message: str, data: object = None) -> Envelope:
    return Envelope(statusCode=200, message=message, data=data)


async def get_admin(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    """Dependency resolving the bearer token to an authenticated admin."""
    return await runtime.auth.authenticate(authorization)


# -- auth --------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    admin, token = await runtime.auth.login(body.email, body.password)
    data = LoginResponse(user=AdminView.model_validate(admin.public_view()), token=token)
    return _ok("Logged in successful", data.model_dump(by_alias=True))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(authorization)
    return _ok("You have successfully logged out")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_admin)):
    view = AdminView.model_validate(principal.admin.public_view())
    return _ok("successful", view.model_dump(by_alias=True))


@router.post("/auth/update-password", response_model=Envelope, tags=["auth"])
async def update_password(
    body: UpdatePasswordRequest,
    principal: AuthContext = Depends(get_admin),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.change_password(
        principal, body.current_password, body.password, body.confirm_password
    )
    return _ok("Password update successfully!", {})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    token = await runtime.auth.request_password_reset(body.email)
    data: dict[str, str] = {}
    if runtime.settings.is_test and token:
        data["reset_token"] = token
    # Same answer whether or not the account exists
    message = (
        f"If an account exists for {normalize_email(body.email)}, "
        "you will receive password reset instructions."
    )
    return _ok(message, data)


@router.get("/auth/confirm-reset-token", response_model=Envelope, tags=["auth"])
async def confirm_reset_token(
    reset_hash: str = Query("", max_length=256),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.validate_reset_token(reset_hash)
    return _ok("Password reset hash is valid!", {})


@router.post("/auth/reset/{reset_token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    reset_token: str,
    body: PasswordResetConfirm,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.reset_password(reset_token, body.password, body.confirm_password)
    return _ok("Password reset successfully, please login to proceed!", {})


# -- admin invites -----------------------------------------------------------


@router.post("/admin/", response_model=Envelope, tags=["admin"])
async def invite_admin(
    body: InviteRequest,
    principal: AuthContext = Depends(get_admin),
    runtime: Runtime = Depends(get_runtime),
):
    admin, token = await runtime.auth.invite_admin(body.email)
    logger.info("admin_invite_created", invited_by=principal.admin_id, admin_id=admin.id)
    data = {"invite_token": token} if runtime.settings.is_test else None
    return _ok("successful", data)


@router.get("/admin/validate-link/{invite_token}", response_model=Envelope, tags=["admin"])
async def validate_invite_link(invite_token: str, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.validate_invite(invite_token)
    return _ok("successful")


@router.post("/admin/accept-invite/{invite_token}", response_model=Envelope, tags=["admin"])
async def accept_invite(
    invite_token: str,
    body: AcceptInviteRequest,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.accept_invite(invite_token, body.password, body.confirm_password)
    return _ok("successful")

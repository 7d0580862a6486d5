from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from staffledger.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    PrincipalResponse,
    ResetPasswordRequest,
)
from staffledger.service.auth import INVALID_CREDENTIALS
from staffledger.service.authenticator import (
    Anonymous,
    AuthContext,
    AuthResult,
    extract_bearer,
    require_role,
)
from staffledger.service.errors import (
    AuthenticationFailedError,
    NotFoundError,
    ValidationError,
)
from staffledger.service.runtime import get_runtime
from staffledger.storage.models import ROLE_SUPER_ADMIN

router = APIRouter(prefix="/v1")


def get_auth_result(request: Request) -> AuthResult:
    """Authentication result attached to the request by the HTTP middleware."""
    result = getattr(request.state, "auth", None)
    return result if result is not None else Anonymous()


def get_user(auth: AuthResult = Depends(get_auth_result)) -> AuthContext:
    return require_role(auth)


def get_super_admin(auth: AuthResult = Depends(get_auth_result)) -> AuthContext:
    return require_role(auth, ROLE_SUPER_ADMIN)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password and receive a bearer token.

    Raises:
        400: blank credentials
        401: unknown email, wrong password or disabled account
        423: account locked; ``details.locked_until`` says until when
    """
    runtime = get_runtime()
    try:
        result = await runtime.auth.login(body.email, body.password)
    except NotFoundError:
        # Unknown email must read exactly like a wrong password.
        raise AuthenticationFailedError(INVALID_CREDENTIALS)
    summary = result.principal
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=result.token,
            user=PrincipalResponse(
                id=summary.id,
                name=summary.name,
                email=summary.email,
                is_active=summary.is_active,
            ),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the presented bearer token until it expires."""
    token = extract_bearer(authorization)
    if not token:
        raise ValidationError("Missing token")
    runtime = get_runtime()
    await runtime.auth.logout(token)
    return Envelope(status="ok", data={"message": "Logout successful"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            email=principal.email,
            roles=sorted(principal.roles),
        ),
    )


@router.post("/users/change-password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.email, body.old_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.post(
    "/users/{user_id}/reset-password", response_model=Envelope, tags=["users"]
)
async def reset_password(
    body: ResetPasswordRequest,
    user_id: str = Path(..., min_length=1, max_length=64),
    admin: AuthContext = Depends(get_super_admin),
):
    """Set a new password for another user. Super admins only."""
    runtime = get_runtime()
    await runtime.auth.reset_password(user_id, body.password)
    return Envelope(status="ok", data={"message": "Password reset successfully"})

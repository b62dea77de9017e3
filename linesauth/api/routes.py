from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from linesauth.api.schemas import (
    AuthTokensResponse,
    CurrentUserResponse,
    EmailOnlyRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OtpChallengeResponse,
    OtpRequest,
    OtpVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    RegisterConfirmRequest,
    TokenRefreshRequest,
    UserResponse,
)
from linesauth.logging import get_correlation_id, get_logger
from linesauth.service.auth import AuthContext, AuthResult
from linesauth.service.errors import ForbiddenError, TokenExpired, TokenInvalid
from linesauth.service.otp import OtpChallenge
from linesauth.service.runtime import get_runtime
from linesauth.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Optional[BaseModel] = None) -> Envelope:
    payload: Any = data.model_dump(mode="json", by_alias=True) if data else None
    return Envelope(
        status="ok", data=payload, request_id=get_correlation_id() or str(uuid4())
    )


def _challenge(challenge: OtpChallenge) -> Envelope:
    return _ok(
        OtpChallengeResponse(email=challenge.email, expires_in=challenge.expires_in)
    )


def _tokens(result: AuthResult) -> Envelope:
    return _ok(
        AuthTokensResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        )
    )


def _message(message: str) -> Envelope:
    return _ok(MessageResponse(success=True, message=message))


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    if token is None:
        raise TokenInvalid("No token provided or invalid format")
    runtime = get_runtime()
    return await runtime.auth.authenticate(token)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    """Like ``get_user`` but anonymous callers and bad tokens resolve to None."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    runtime = get_runtime()
    try:
        return await runtime.auth.authenticate(token)
    except (TokenInvalid, TokenExpired):
        return None


def require_roles(*roles: str):
    """Dependency factory admitting only principals holding one of ``roles``."""
    allowed = {Role.parse(role).value for role in roles}

    async def dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        if principal.role not in allowed:
            logger.warning(
                "role_check_denied", user_id=principal.user_id, role=principal.role
            )
            raise ForbiddenError("Insufficient permissions")
        return principal

    return dependency


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
async def request_otp(body: OtpRequest):
    """Stage a registration and email a six-digit passcode.

    Raises:
        409: If an account already exists for the email
    """
    runtime = get_runtime()
    challenge = await runtime.auth.request_registration(
        body.email, body.full_name, body.password
    )
    return _challenge(challenge)


@router.post("/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: EmailOnlyRequest):
    runtime = get_runtime()
    challenge = await runtime.auth.resend_registration(body.email)
    return _challenge(challenge)


@router.post(
    "/auth/register/confirm",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
)
async def confirm_registration(body: RegisterConfirmRequest):
    """Verify the passcode and create the account.

    Returns the new user plus an access/refresh token pair.
    """
    runtime = get_runtime()
    result = await runtime.auth.confirm_registration(body.email, body.otp, body.role)
    return _tokens(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated or the email is unverified
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return _tokens(result)


@router.post("/auth/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return _tokens(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal, body.refresh_token if body else None)
    return _message("Logged out successfully")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout_all(principal)
    return _message("Logged out from all devices successfully")


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password and revoke every refresh token of the caller."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return _message("Password changed successfully. Please login again.")


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailOnlyRequest):
    """Email a reset passcode; the response does not reveal whether the account exists."""
    runtime = get_runtime()
    challenge = await runtime.auth.request_password_reset(body.email)
    return _challenge(challenge)


@router.post("/auth/password/reset/verify", response_model=Envelope, tags=["auth"])
async def verify_password_reset(body: OtpVerifyRequest):
    runtime = get_runtime()
    await runtime.auth.verify_password_reset(body.email, body.otp)
    return _message("OTP verified. You can now reset your password.")


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirmRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email, body.new_password)
    return _message(
        "Password reset successfully. Please login with your new password."
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal)
    return _ok(CurrentUserResponse(user=UserResponse.from_user(user)))

"""Authentication router: all /api/v1/auth/* endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from warden.auth.dependencies import client_ip, get_access_token, get_auth_service, get_current_user
from warden.auth.schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionsRevokedResponse,
    StatusResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from warden.auth.service import AuthResult, AuthService
from warden.db.models import User

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _token_response(result: AuthResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
        user=UserResponse.model_validate(result.user),
    )


# ---------------------------------------------------------------------------
# Registration & login
# ---------------------------------------------------------------------------


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Create an account. A verification email is sent; login is not blocked on it."""
    result = await service.register(
        body.email,
        body.password,
        body.display_name,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _token_response(result)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    result = await service.login(
        body.email,
        body.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _token_response(result)


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/verify-email", response_model=StatusResponse)
async def verify_email(
    body: VerifyEmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    await service.verify_email(body.token)
    return StatusResponse(status="email_verified")


@router.post("/resend-verification", response_model=StatusResponse)
async def resend_verification(
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    await service.resend_verification(user)
    return StatusResponse(status="verification_email_sent")


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/forgot-password", response_model=StatusResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    """Request password reset email. Always returns 200."""
    await service.request_password_reset(body.email)
    return StatusResponse(status="If that email exists, a reset link has been sent.")


@router.post("/reset-password", response_model=StatusResponse)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    await service.reset_password(body.token, body.new_password, ip_address=client_ip(request))
    return StatusResponse(status="password_reset_complete")


@router.post("/change-password", response_model=StatusResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    """Change password. Every session, including this one, must sign in again."""
    await service.change_password(
        user, body.current_password, body.new_password, ip_address=client_ip(request)
    )
    return StatusResponse(status="password_changed")


# ---------------------------------------------------------------------------
# Token management
# ---------------------------------------------------------------------------


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    body: RefreshRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Rotate refresh token."""
    result = await service.refresh_tokens(
        body.refresh_token,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _token_response(result)


@router.post("/logout", response_model=StatusResponse)
async def logout(
    body: LogoutRequest | None = None,
    token: str = Depends(get_access_token),
    service: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    """Blacklist the presented access token and revoke the given refresh token."""
    await service.logout(token, body.refresh_token if body else None)
    return StatusResponse(status="logged_out")


@router.post("/logout-all", response_model=SessionsRevokedResponse)
async def logout_all(
    token: str = Depends(get_access_token),
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> SessionsRevokedResponse:
    """Revoke all refresh tokens for the current user."""
    count = await service.logout_all(user, token)
    return SessionsRevokedResponse(revoked_count=count)

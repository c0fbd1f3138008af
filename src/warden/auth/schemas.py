"""Request/response schemas for authentication endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator


class _EmailBody(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Normalize email to lowercase."""
        return v.lower().strip()


# ---------------------------------------------------------------------------
# Registration & login
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailBody):
    """Email registration request."""

    password: str = Field(..., min_length=1, max_length=128)
    display_name: str | None = Field(None, min_length=1, max_length=100)


class LoginRequest(_EmailBody):
    """Login with email + password."""

    password: str = Field(..., min_length=1, max_length=128)


class VerifyEmailRequest(BaseModel):
    """Verify email address with a token."""

    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(_EmailBody):
    """Request a password reset email."""


class ResetPasswordRequest(BaseModel):
    """Reset password with a valid token."""

    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=128)


class ChangePasswordRequest(BaseModel):
    """Change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Logout. The access token comes from the Authorization header."""

    refresh_token: str | None = None


class UserResponse(BaseModel):
    """User profile as seen by the user and by admins."""

    id: int
    email: str
    display_name: str | None = None
    role: str
    email_verified: bool = False
    external_provider: str | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None
    login_count: int = 0

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    """Token response returned after successful auth."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class StatusResponse(BaseModel):
    status: str


class SessionsRevokedResponse(BaseModel):
    status: str = "all_sessions_revoked"
    revoked_count: int

"""Request/response schemas for user administration."""

from __future__ import annotations

from pydantic import BaseModel

from warden.auth.schemas import UserResponse
from warden.db.models import Role


class RoleUpdateRequest(BaseModel):
    role: Role


class UserListResponse(BaseModel):
    users: list[UserResponse]
    limit: int
    offset: int


class UserDeletedResponse(BaseModel):
    status: str = "user_deleted"
    sessions_revoked: int

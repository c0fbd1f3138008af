"""User administration router: all /api/v1/users/* endpoints. Admin only."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.dependencies import require_admin
from warden.auth.schemas import UserResponse
from warden.database import get_session
from warden.db.models import User
from warden.users import service
from warden.users.schemas import RoleUpdateRequest, UserDeletedResponse, UserListResponse

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


@router.get("", response_model=UserListResponse)
@router.get("/", response_model=UserListResponse, include_in_schema=False)
async def list_users(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> UserListResponse:
    users = await service.list_users(db, limit=limit, offset=offset)
    return UserListResponse(
        users=[UserResponse.model_validate(u) for u in users],
        limit=limit,
        offset=offset,
    )


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> UserResponse:
    return UserResponse.model_validate(await service.get_user(db, user_id))


@router.patch("/{user_id}/role", response_model=UserResponse)
async def update_role(
    user_id: int,
    body: RoleUpdateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> UserResponse:
    user = await service.update_role(db, admin, user_id, body.role)
    await db.commit()
    return UserResponse.model_validate(user)


@router.delete("/{user_id}", response_model=UserDeletedResponse)
async def delete_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> UserDeletedResponse:
    revoked = await service.delete_user(db, admin, user_id)
    await db.commit()
    return UserDeletedResponse(sessions_revoked=revoked)

from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.api.deps import get_current_active_user, get_hub
from app.schemas.friendship import BlockCreate, BlockedUserOut, BlockStatus, MessageResponse
from app.models.user import User as UserModel
from app.services.friendship import FriendshipService
from app.services.realtime import RealtimeHub

router = APIRouter()


class BlockedUsersPage(BaseModel):
    blocked_users: List[BlockedUserOut]
    total_count: int
    limit: int
    offset: int


@router.post("", response_model=BlockedUserOut, status_code=201)
async def block_user(
    block_data: BlockCreate,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Block a user; any friendship and pending requests with them are removed"""
    service = FriendshipService(db, hub)
    return await service.block_user(current_user, block_data.blocked_id, block_data.reason)


@router.get("", response_model=BlockedUsersPage)
async def get_blocked_users(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    service = FriendshipService(db, hub)
    blocked_users, total_count = await service.list_blocked(current_user.id, limit, offset)
    return BlockedUsersPage(blocked_users=blocked_users, total_count=total_count, limit=limit, offset=offset)


@router.get("/{user_id}", response_model=BlockStatus)
async def get_block_status(
    user_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Whether a block exists between the current user and ``user_id``, in either direction"""
    service = FriendshipService(db, hub)
    return await service.block_status(current_user.id, user_id)


@router.delete("/{user_id}", response_model=MessageResponse)
async def unblock_user(
    user_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    service = FriendshipService(db, hub)
    await service.unblock_user(current_user, user_id)
    return MessageResponse(message="User unblocked successfully")

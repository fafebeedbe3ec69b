from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.api.deps import get_current_active_user, get_hub
from app.schemas.friendship import FriendsList, MessageResponse
from app.models.user import User as UserModel
from app.services.friendship import FriendshipService
from app.services.realtime import RealtimeHub

router = APIRouter()


@router.get("", response_model=FriendsList)
async def get_friends(
    limit: int = Query(50, ge=1, le=100, description="Maximum number of friends to return"),
    offset: int = Query(0, ge=0, description="Number of friends to skip"),
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Get the current user's friends with their visible presence"""
    service = FriendshipService(db, hub)
    return await service.list_friends(current_user.id, limit, offset)


@router.get("/online", response_model=FriendsList)
async def get_online_friends(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Friends that are connected and visible to the current user"""
    service = FriendshipService(db, hub)
    return await service.list_friends(current_user.id, limit, offset, online_only=True)


@router.delete("/{friend_id}", response_model=MessageResponse)
async def remove_friend(
    friend_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Remove a friend"""
    service = FriendshipService(db, hub)
    await service.remove_friend(current_user, friend_id)
    return MessageResponse(message="Friend removed successfully")

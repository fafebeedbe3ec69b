from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.api.deps import get_current_active_user, get_hub
from app.schemas.friendship import (
    AcceptResult, FriendRequestCreate, FriendRequestOut, RequestsPage, SendRequestResult
)
from app.models.user import User as UserModel
from app.services.friendship import FriendshipService
from app.services.realtime import RealtimeHub

router = APIRouter()


@router.post("", response_model=SendRequestResult, status_code=201)
async def send_friend_request(
    request_data: FriendRequestCreate,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Send a friend request; a crossed pending request is accepted instead"""
    service = FriendshipService(db, hub)
    return await service.send_request(current_user, request_data.receiver_id, request_data.message)


@router.get("/received", response_model=RequestsPage)
async def get_received_requests(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Pending requests addressed to the current user"""
    service = FriendshipService(db, hub)
    return await service.list_received(current_user.id, limit, offset)


@router.get("/sent", response_model=RequestsPage)
async def get_sent_requests(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Pending requests sent by the current user"""
    service = FriendshipService(db, hub)
    return await service.list_sent(current_user.id, limit, offset)


@router.put("/{request_id}/accept", response_model=AcceptResult)
async def accept_friend_request(
    request_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    service = FriendshipService(db, hub)
    return await service.accept_request(request_id, current_user)


@router.put("/{request_id}/decline", response_model=FriendRequestOut)
async def decline_friend_request(
    request_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    service = FriendshipService(db, hub)
    return await service.decline_request(request_id, current_user)


@router.delete("/{request_id}", response_model=FriendRequestOut)
async def cancel_friend_request(
    request_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub)
):
    """Withdraw a request the current user sent"""
    service = FriendshipService(db, hub)
    return await service.cancel_request(request_id, current_user)

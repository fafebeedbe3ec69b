from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_active_user, get_hub
from app.schemas.activity import ActivityPage, ActivityType
from app.schemas.friendship import MessageResponse
from app.models.user import User as UserModel
from app.services.realtime import RealtimeHub
from app.utils.exceptions import NotFoundError

router = APIRouter()


@router.get("", response_model=ActivityPage)
async def get_activity_feed(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    activity_type: Optional[ActivityType] = Query(None, description="Only entries of this type"),
    since: Optional[datetime] = Query(None, description="Only entries created after this time"),
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    """Friends' activity visible to the current user, newest first"""
    return await hub.activity.feed(current_user.id, limit, offset, activity_type, since)


@router.delete("/{activity_id}", response_model=MessageResponse)
async def hide_activity(
    activity_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    if not await hub.activity.hide(current_user.id, activity_id):
        raise NotFoundError("Activity not found", "ACTIVITY_NOT_FOUND")
    return MessageResponse(message="Activity hidden")

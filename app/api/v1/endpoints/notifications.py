from typing import List

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_active_user, get_hub
from app.schemas.friendship import MessageResponse
from app.schemas.notification import (
    CountResult, NotificationIds, NotificationPreferenceOut, NotificationPreferenceUpdate, NotificationsPage
)
from app.models.user import User as UserModel
from app.services.realtime import RealtimeHub
from app.utils.exceptions import NotFoundError

router = APIRouter()


@router.get("", response_model=NotificationsPage)
async def get_notifications(
    unread_only: bool = Query(False, description="Only return unread notifications"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    """Stored notifications, newest first"""
    return await hub.dispatcher.get_notifications(current_user.id, unread_only, limit, offset)


@router.get("/unread/count", response_model=CountResult)
async def get_unread_count(
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return CountResult(count=await hub.dispatcher.unread_count(current_user.id))


@router.get("/preferences", response_model=List[NotificationPreferenceOut])
async def get_preferences(
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    """Preferences for every notification type, defaults filled in"""
    return await hub.dispatcher.get_preferences(current_user.id)


@router.put("/preferences", response_model=List[NotificationPreferenceOut])
async def update_preferences(
    updates: List[NotificationPreferenceUpdate],
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return await hub.dispatcher.update_preferences(current_user.id, updates)


@router.put("/read-all", response_model=CountResult)
async def mark_all_read(
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return CountResult(count=await hub.dispatcher.mark_all_read(current_user.id))


@router.post("/batch/read", response_model=CountResult)
async def mark_many_read(
    body: NotificationIds,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return CountResult(count=await hub.dispatcher.mark_many_read(current_user.id, body.notification_ids))


@router.post("/batch/delete", response_model=CountResult)
async def delete_many(
    body: NotificationIds,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return CountResult(count=await hub.dispatcher.delete_many(current_user.id, body.notification_ids))


@router.put("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    """Mark one of the current user's unread notifications as read"""
    if not await hub.dispatcher.mark_read(notification_id, current_user.id):
        raise NotFoundError("Notification not found or already read", "NOTIFICATION_NOT_FOUND")
    return MessageResponse(message="Notification marked as read")


@router.delete("/{notification_id}", response_model=MessageResponse)
async def delete_notification(
    notification_id: int,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    if not await hub.dispatcher.delete(notification_id, current_user.id):
        raise NotFoundError("Notification not found", "NOTIFICATION_NOT_FOUND")
    return MessageResponse(message="Notification deleted")

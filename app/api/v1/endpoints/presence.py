from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_current_active_user, get_hub
from app.schemas.presence import (
    FriendPresence, PresenceOut, PresenceSettingsOut, PresenceSettingsUpdate, PresenceUpdate
)
from app.models.user import User as UserModel
from app.services.realtime import RealtimeHub

router = APIRouter()


class PresenceUpdateResult(BaseModel):
    success: bool = True
    # False when the status was unchanged or the update was throttled
    updated: bool
    presence: PresenceOut


@router.get("/status", response_model=PresenceOut)
async def get_my_presence(
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    """The current user's own presence, including invisible"""
    return await hub.presence.get_presence(current_user.id)


@router.put("/status", response_model=PresenceUpdateResult)
async def update_my_presence(
    update: PresenceUpdate,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    hub.presence.validate_update(update.status, update.activity_message)
    updated = await hub.presence.set_status(current_user.id, update.status, update.activity_message)
    presence = await hub.presence.get_presence(current_user.id)
    return PresenceUpdateResult(updated=updated, presence=presence)


@router.get("/friends", response_model=List[FriendPresence])
async def get_friends_presence(
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    """Friends' presence as the current user is allowed to see it"""
    return await hub.presence.get_friends_presence(current_user.id)


@router.get("/settings", response_model=PresenceSettingsOut)
async def get_presence_settings(
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return await hub.presence.get_settings(current_user.id)


@router.put("/settings", response_model=PresenceSettingsOut)
async def update_presence_settings(
    update: PresenceSettingsUpdate,
    current_user: UserModel = Depends(get_current_active_user),
    hub: RealtimeHub = Depends(get_hub)
):
    return await hub.presence.update_settings(current_user.id, update)

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Type
from enum import Enum

from app.schemas.friendship import UserSummary


class ActivityType(str, Enum):
    FRIEND_ADDED = "friend_added"
    STATUS_CHANGED = "status_changed"
    PROFILE_UPDATED = "profile_updated"
    CAME_ONLINE = "came_online"
    WENT_OFFLINE = "went_offline"
    LANGUAGE_CHANGED = "language_changed"


class FriendAddedPayload(BaseModel):
    friend_id: int
    friend_name: str


class StatusChangedPayload(BaseModel):
    status: str
    activity_message: Optional[str] = None


class ProfileUpdatedPayload(BaseModel):
    fields: List[str] = []


class PresencePayload(BaseModel):
    pass


class LanguageChangedPayload(BaseModel):
    language: str


PAYLOAD_MODELS: Dict[ActivityType, Type[BaseModel]] = {
    ActivityType.FRIEND_ADDED: FriendAddedPayload,
    ActivityType.STATUS_CHANGED: StatusChangedPayload,
    ActivityType.PROFILE_UPDATED: ProfileUpdatedPayload,
    ActivityType.CAME_ONLINE: PresencePayload,
    ActivityType.WENT_OFFLINE: PresencePayload,
    ActivityType.LANGUAGE_CHANGED: LanguageChangedPayload,
}


def validate_payload(activity_type: ActivityType, payload: Any = None) -> Dict[str, Any]:
    """Coerce a payload into the model for its activity type.

    Raises pydantic's ValidationError when the shape does not match.
    """
    model = PAYLOAD_MODELS[activity_type]
    if isinstance(payload, model):
        return payload.model_dump(mode="json")
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return model.model_validate(payload or {}).model_dump(mode="json")


def format_activity_message(actor_name: str, activity_type: str, data: Optional[Dict[str, Any]] = None) -> str:
    data = data or {}
    if activity_type == ActivityType.FRIEND_ADDED.value:
        return f"{actor_name} became friends with {data.get('friend_name', 'someone')}"
    if activity_type == ActivityType.STATUS_CHANGED.value:
        return f"{actor_name} changed their status to {data.get('status', 'unknown')}"
    if activity_type == ActivityType.PROFILE_UPDATED.value:
        return f"{actor_name} updated their profile"
    if activity_type == ActivityType.CAME_ONLINE.value:
        return f"{actor_name} came online"
    if activity_type == ActivityType.WENT_OFFLINE.value:
        return f"{actor_name} went offline"
    if activity_type == ActivityType.LANGUAGE_CHANGED.value:
        return f"{actor_name} is now learning {data.get('language', 'a new language')}"
    return f"{actor_name} had some activity"


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: int
    activity_type: ActivityType
    activity_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    actor: Optional[UserSummary] = None
    formatted_message: str = ""


class ActivityPage(BaseModel):
    activities: List[ActivityOut]
    limit: int
    offset: int
    has_more: bool


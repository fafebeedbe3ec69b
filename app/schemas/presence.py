from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Optional
from enum import Enum

ACTIVITY_MESSAGE_MAX_LENGTH = 100


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"
    INVISIBLE = "invisible"


# Friends list ordering; anything else sorts after busy
STATUS_ORDER = {
    PresenceStatus.ONLINE.value: 0,
    PresenceStatus.AWAY.value: 1,
    PresenceStatus.BUSY.value: 2,
}


class PrivacyMode(str, Enum):
    EVERYONE = "everyone"
    FRIENDS = "friends"
    ACTIVE_CHATS = "active_chats"
    SELECTED = "selected"
    NOBODY = "nobody"


class PresenceUpdate(BaseModel):
    # Plain strings: the service answers bad values with a 400
    status: str
    activity_message: Optional[str] = None


class PresenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    status: str
    activity_message: Optional[str] = None
    last_seen: Optional[datetime] = None
    socket_count: int = 0
    is_online: bool = False


class FriendPresence(BaseModel):
    user_id: int
    username: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: str
    activity_message: Optional[str] = None
    last_seen: Optional[datetime] = None
    is_online: bool = False


class PresenceSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    privacy_mode: PrivacyMode = PrivacyMode.FRIENDS
    allowed_contacts: List[int] = []
    auto_away_enabled: bool = True
    auto_away_minutes: int = 5
    block_unknown_users: bool = False
    show_activity_to_friends: bool = True
    allow_urgent_override: bool = True


class PresenceSettingsUpdate(BaseModel):
    privacy_mode: Optional[PrivacyMode] = None
    allowed_contacts: Optional[List[int]] = None
    auto_away_enabled: Optional[bool] = None
    auto_away_minutes: Optional[int] = Field(None, ge=1, le=60)
    block_unknown_users: Optional[bool] = None
    show_activity_to_friends: Optional[bool] = None
    allow_urgent_override: Optional[bool] = None

from pydantic import BaseModel
from typing import Any, Dict, Optional
from enum import Enum


class WebSocketEventType(str, Enum):
    # Client -> server
    PING = "ping"
    ACK = "ack"
    PRESENCE_UPDATE = "presence:update"
    FRIENDS_PRESENCE = "friends:presence"
    NOTIFICATION_READ = "notification:read"
    ACTIVITY_HIDE = "activity:hide"
    FRIEND_MESSAGE = "friend:message"
    TYPING = "typing"

    # Server -> client
    PONG = "pong"
    ERROR = "error"
    HEARTBEAT = "heartbeat"
    NOTIFICATION = "notification"
    PRESENCE_SELF = "presence:self"
    FRIEND_PRESENCE_UPDATE = "friend:presence:update"
    FRIEND_STATUS_CHANGED = "friend:status:changed"
    FRIEND_ONLINE = "friend:online"
    FRIEND_OFFLINE = "friend:offline"
    FRIEND_CAME_ONLINE = "friend:came_online"
    FRIEND_WENT_OFFLINE = "friend:went_offline"
    FRIEND_REMOVED = "friend:removed"
    FRIEND_TYPING = "friend:typing"
    ACTIVITY_NEW = "activity:new"
    ACTIVITY_HIDDEN = "activity:hidden"


class IncomingEvent(BaseModel):
    type: WebSocketEventType
    data: Dict[str, Any] = {}
    ack_id: Optional[str] = None


class FriendMessageIn(BaseModel):
    friend_id: int
    message: str


class TypingIn(BaseModel):
    friend_id: int
    is_typing: bool = True

"""Notification types, per-type defaults and typed payloads.

Every notification stored or pushed is built by one of the factory functions
at the bottom of this module so the ``data`` blob of a given type always has
the same shape.
"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from enum import Enum

from app.schemas.friendship import UserSummary


class NotificationType(str, Enum):
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPTED = "friend_accepted"
    FRIEND_ONLINE = "friend_online"
    FRIEND_OFFLINE = "friend_offline"
    FRIEND_MESSAGE = "friend_message"
    FRIEND_REMOVED = "friend_removed"
    USER_BLOCKED = "user_blocked"


class NotificationPreferenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_type: NotificationType
    enabled: bool = True
    sound_enabled: bool = True
    desktop_enabled: bool = True
    email_enabled: bool = False


class NotificationPreferenceUpdate(BaseModel):
    notification_type: NotificationType
    enabled: Optional[bool] = None
    sound_enabled: Optional[bool] = None
    desktop_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None


def _defaults(notification_type: NotificationType, enabled: bool, sound: bool, desktop: bool) -> NotificationPreferenceOut:
    return NotificationPreferenceOut(
        notification_type=notification_type,
        enabled=enabled,
        sound_enabled=sound,
        desktop_enabled=desktop,
        email_enabled=False,
    )


TYPE_DEFAULTS: Dict[NotificationType, NotificationPreferenceOut] = {
    NotificationType.FRIEND_REQUEST: _defaults(NotificationType.FRIEND_REQUEST, True, True, True),
    NotificationType.FRIEND_ACCEPTED: _defaults(NotificationType.FRIEND_ACCEPTED, True, True, True),
    NotificationType.FRIEND_ONLINE: _defaults(NotificationType.FRIEND_ONLINE, True, False, False),
    NotificationType.FRIEND_OFFLINE: _defaults(NotificationType.FRIEND_OFFLINE, False, False, False),
    NotificationType.FRIEND_MESSAGE: _defaults(NotificationType.FRIEND_MESSAGE, True, True, True),
    NotificationType.FRIEND_REMOVED: _defaults(NotificationType.FRIEND_REMOVED, True, False, True),
    NotificationType.USER_BLOCKED: _defaults(NotificationType.USER_BLOCKED, False, False, False),
}


def default_preference(notification_type: NotificationType) -> NotificationPreferenceOut:
    return TYPE_DEFAULTS[NotificationType(notification_type)].model_copy()


# Typed payloads

class NotificationAction(BaseModel):
    type: str
    label: str


class FriendRequestData(BaseModel):
    kind: Literal["friend_request"] = "friend_request"
    request_id: int
    sender: UserSummary
    actions: List[NotificationAction] = [
        NotificationAction(type="accept", label="Accept"),
        NotificationAction(type="decline", label="Decline"),
    ]


class FriendAcceptedData(BaseModel):
    kind: Literal["friend_accepted"] = "friend_accepted"
    friend: UserSummary
    friendship_id: Optional[int] = None


class FriendPresenceData(BaseModel):
    kind: Literal["friend_presence"] = "friend_presence"
    friend: UserSummary
    status: str


class FriendMessageData(BaseModel):
    kind: Literal["friend_message"] = "friend_message"
    sender: UserSummary
    preview: str


class FriendRemovedData(BaseModel):
    kind: Literal["friend_removed"] = "friend_removed"
    removed_by: UserSummary


class UserBlockedData(BaseModel):
    kind: Literal["user_blocked"] = "user_blocked"
    blocked_user_id: int


# Tagged by "kind"; friend_online and friend_offline share the presence payload
NotificationData = Annotated[
    Union[
        FriendRequestData,
        FriendAcceptedData,
        FriendPresenceData,
        FriendMessageData,
        FriendRemovedData,
        UserBlockedData,
    ],
    Field(discriminator="kind"),
]


class NotificationCreate(BaseModel):
    type: NotificationType
    message: str = Field(..., max_length=255)
    sender_id: Optional[int] = None
    data: Optional[NotificationData] = None

    def data_dict(self) -> Dict[str, Any]:
        return self.data.model_dump(mode="json") if self.data is not None else {}


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    sender_id: Optional[int] = None
    type: NotificationType
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime] = None
    sender: Optional[UserSummary] = None


class NotificationsPage(BaseModel):
    notifications: List[NotificationOut]
    unread_count: int
    limit: int
    offset: int


class NotificationIds(BaseModel):
    notification_ids: List[int] = Field(..., min_length=1, max_length=100)


class BatchResult(BaseModel):
    total: int = 0
    delivered: int = 0
    queued: int = 0
    stored: int = 0
    failed: int = 0
    skipped: int = 0


class CountResult(BaseModel):
    success: bool = True
    count: int


# Factories

def _summary(user) -> UserSummary:
    return UserSummary.model_validate(user)


def _name(user) -> str:
    return user.full_name or user.username


def friend_request_notification(sender, request_id: int) -> NotificationCreate:
    return NotificationCreate(
        type=NotificationType.FRIEND_REQUEST,
        message=f"{_name(sender)} sent you a friend request",
        sender_id=sender.id,
        data=FriendRequestData(request_id=request_id, sender=_summary(sender)),
    )


def friend_accepted_notification(accepter, friendship_id: Optional[int] = None) -> NotificationCreate:
    """Sent to the original requester"""
    return NotificationCreate(
        type=NotificationType.FRIEND_ACCEPTED,
        message=f"{_name(accepter)} accepted your friend request",
        sender_id=accepter.id,
        data=FriendAcceptedData(friend=_summary(accepter), friendship_id=friendship_id),
    )


def now_friends_notification(friend, friendship_id: Optional[int] = None) -> NotificationCreate:
    """Sent to the accepting side"""
    return NotificationCreate(
        type=NotificationType.FRIEND_ACCEPTED,
        message=f"You are now friends with {_name(friend)}",
        sender_id=friend.id,
        data=FriendAcceptedData(friend=_summary(friend), friendship_id=friendship_id),
    )


def friend_online_notification(user) -> NotificationCreate:
    return NotificationCreate(
        type=NotificationType.FRIEND_ONLINE,
        message=f"{_name(user)} is now online",
        sender_id=user.id,
        data=FriendPresenceData(friend=_summary(user), status="online"),
    )


def friend_offline_notification(user) -> NotificationCreate:
    return NotificationCreate(
        type=NotificationType.FRIEND_OFFLINE,
        message=f"{_name(user)} went offline",
        sender_id=user.id,
        data=FriendPresenceData(friend=_summary(user), status="offline"),
    )


def friend_message_notification(sender, text: str) -> NotificationCreate:
    return NotificationCreate(
        type=NotificationType.FRIEND_MESSAGE,
        message=f"{_name(sender)} sent you a message",
        sender_id=sender.id,
        data=FriendMessageData(sender=_summary(sender), preview=text[:100]),
    )


def friend_removed_notification(remover) -> NotificationCreate:
    return NotificationCreate(
        type=NotificationType.FRIEND_REMOVED,
        message=f"You are no longer friends with {_name(remover)}",
        sender_id=remover.id,
        data=FriendRemovedData(removed_by=_summary(remover)),
    )


def user_blocked_notification(blocked_user) -> NotificationCreate:
    """Silent confirmation for the blocker; there is no sender"""
    return NotificationCreate(
        type=NotificationType.USER_BLOCKED,
        message=f"You blocked {_name(blocked_user)}",
        sender_id=None,
        data=UserBlockedData(blocked_user_id=blocked_user.id),
    )

from pydantic import BaseModel, ConfigDict, computed_field
from datetime import datetime
from typing import List, Optional
from enum import Enum


class FriendRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FriendshipStatus(str, Enum):
    ACTIVE = "active"


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class FriendRequestCreate(BaseModel):
    receiver_id: int
    # Length is checked by the service so an overlong message is a 400
    message: Optional[str] = None


class FriendRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: int
    receiver_id: int
    status: FriendRequestStatus
    message: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    sender: Optional[UserSummary] = None
    receiver: Optional[UserSummary] = None


class SendRequestResult(BaseModel):
    success: bool = True
    # True when a crossed pending request was merged into a friendship
    auto_accepted: bool = False
    request: Optional[FriendRequestOut] = None
    friendship_id: Optional[int] = None


class AcceptResult(BaseModel):
    success: bool = True
    friendship_id: int
    friend: UserSummary


class RequestsPage(BaseModel):
    requests: List[FriendRequestOut]
    total_count: int
    limit: int
    offset: int


class FriendOut(UserSummary):
    status: str = "offline"
    activity_message: Optional[str] = None
    last_seen: Optional[datetime] = None
    is_online: bool = False
    friends_since: Optional[datetime] = None


class FriendsList(BaseModel):
    friends: List[FriendOut]
    total_count: int


class BlockCreate(BaseModel):
    blocked_id: int
    reason: Optional[str] = None


class BlockedUserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    blocked_id: int
    reason: Optional[str] = None
    created_at: datetime
    blocked: Optional[UserSummary] = None


class BlockStatus(BaseModel):
    user_id: int
    blocked_by_me: bool
    blocked_me: bool

    @computed_field
    @property
    def is_blocked(self) -> bool:
        return self.blocked_by_me or self.blocked_me


class MessageResponse(BaseModel):
    success: bool = True
    message: str

from app.models.user import User
from app.models.friendship import Friendship, FriendRequest, BlockedUser
from app.models.presence import UserPresence, UserPresenceSettings, SocketSession
from app.models.notification import FriendNotification, NotificationPreference
from app.models.activity import FriendActivity

__all__ = [
    "User", "Friendship", "FriendRequest", "BlockedUser",
    "UserPresence", "UserPresenceSettings", "SocketSession",
    "FriendNotification", "NotificationPreference", "FriendActivity",
]

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.friendship import FriendRequest
from app.models.user import User
from app.repositories.friendship import FriendshipRepository
from app.repositories.notification import NotificationRepository
from app.repositories.user import UserRepository
from app.schemas.activity import ActivityType
from app.schemas.friendship import (
    AcceptResult, BlockedUserOut, BlockStatus, FriendOut, FriendRequestOut, FriendRequestStatus,
    FriendsList, RequestsPage, SendRequestResult, UserSummary
)
from app.schemas.notification import (
    NotificationType, friend_accepted_notification, friend_removed_notification,
    friend_request_notification, now_friends_notification, user_blocked_notification
)
from app.utils.exceptions import (
    AuthorizationError, ConflictError, GoneError, NotFoundError, ValidationError
)
from app.utils.time import ensure_aware, isoformat, utcnow

logger = logging.getLogger(__name__)

BLOCK_REASON_MAX_LENGTH = 100

# Notifications that only make sense while the pair is connected
RELATIONSHIP_NOTIFICATIONS = (NotificationType.FRIEND_REQUEST, NotificationType.FRIEND_ACCEPTED)


class FriendshipService:
    """Request-scoped friend, request and block operations.

    Writes happen in the caller's session and are committed here; pushes to
    live connections go out only after the commit succeeded.
    """

    def __init__(self, db: AsyncSession, hub):
        self.db = db
        self.hub = hub
        self.settings = hub.settings
        self.repo = FriendshipRepository(db)
        self.users = UserRepository(db)
        self.notifications = NotificationRepository(db)

    # Friend requests

    async def send_request(self, sender: User, receiver_id: int, message: Optional[str] = None) -> SendRequestResult:
        """Send a friend request, or accept a crossed pending one"""
        if sender.id == receiver_id:
            raise ValidationError("Cannot send friend request to yourself", "SELF_REQUEST")
        message = message.strip() if message else None
        if message and len(message) > self.settings.FRIEND_REQUEST_MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message must be {self.settings.FRIEND_REQUEST_MESSAGE_MAX_LENGTH} characters or less",
                "MESSAGE_TOO_LONG"
            )

        receiver = await self.users.get_by_id(receiver_id)
        if not receiver:
            raise NotFoundError("User not found", "USER_NOT_FOUND")
        if receiver.is_blocked or not receiver.is_active:
            raise AuthorizationError("Cannot send friend request to this user", "USER_UNAVAILABLE")
        if await self.repo.is_blocked_either_way(sender.id, receiver_id):
            raise AuthorizationError("Cannot send friend request to this user", "BLOCKED")
        if await self.repo.are_friends(sender.id, receiver_id):
            raise ConflictError("You are already friends with this user", "ALREADY_FRIENDS")

        now = utcnow()
        if await self.repo.get_pending_request(sender.id, receiver_id, now):
            raise ConflictError("Friend request already sent", "REQUEST_EXISTS")

        crossed = await self.repo.get_pending_request(receiver_id, sender.id, now)
        if crossed:
            # Both sides asked; treat the new request as acceptance of the old one
            logger.info(f"Crossed friend requests between {sender.id} and {receiver_id}, auto-accepting")
            friendship_id = await self._accept(crossed, requester=receiver, accepter=sender)
            return SendRequestResult(auto_accepted=True, friendship_id=friendship_id)

        try:
            await self.repo.purge_stale_requests(sender.id, receiver_id, now)
            expires_at = now + timedelta(days=self.settings.FRIEND_REQUEST_TTL_DAYS)
            friend_request = await self.repo.create_request(sender.id, receiver_id, message, expires_at)
            record = await self.hub.dispatcher.stage(
                self.db, receiver_id, friend_request_notification(sender, friend_request.id)
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Friend request already sent", "REQUEST_EXISTS")

        logger.info(f"Friend request {friend_request.id} sent from {sender.id} to {receiver_id}")
        if record:
            await self.hub.dispatcher.push(receiver_id, record)
        return SendRequestResult(request=self._request_out(friend_request, sender, receiver))

    async def accept_request(self, request_id: int, user: User) -> AcceptResult:
        friend_request = await self._actionable_request(request_id, user.id, as_receiver=True)
        friendship_id = await self._accept(friend_request, requester=friend_request.sender, accepter=user)
        return AcceptResult(friendship_id=friendship_id, friend=UserSummary.model_validate(friend_request.sender))

    async def decline_request(self, request_id: int, user: User) -> FriendRequestOut:
        friend_request = await self._actionable_request(request_id, user.id, as_receiver=True)
        await self.repo.set_request_status(friend_request, FriendRequestStatus.DECLINED)
        await self.db.commit()
        logger.info(f"Friend request {request_id} declined by {user.id}")
        return FriendRequestOut.model_validate(friend_request)

    async def cancel_request(self, request_id: int, user: User) -> FriendRequestOut:
        friend_request = await self._actionable_request(request_id, user.id, as_receiver=False)
        await self.repo.set_request_status(friend_request, FriendRequestStatus.CANCELLED)
        await self.notifications.delete_between(
            friend_request.sender_id, friend_request.receiver_id, [NotificationType.FRIEND_REQUEST]
        )
        await self.db.commit()
        logger.info(f"Friend request {request_id} cancelled by {user.id}")
        return FriendRequestOut.model_validate(friend_request)

    async def list_received(self, user_id: int, limit: int = 20, offset: int = 0) -> RequestsPage:
        requests, total_count = await self.repo.list_received(user_id, limit, offset)
        return RequestsPage(
            requests=[FriendRequestOut.model_validate(r) for r in requests],
            total_count=total_count,
            limit=limit,
            offset=offset
        )

    async def list_sent(self, user_id: int, limit: int = 20, offset: int = 0) -> RequestsPage:
        requests, total_count = await self.repo.list_sent(user_id, limit, offset)
        return RequestsPage(
            requests=[FriendRequestOut.model_validate(r) for r in requests],
            total_count=total_count,
            limit=limit,
            offset=offset
        )

    async def _actionable_request(self, request_id: int, user_id: int, as_receiver: bool) -> FriendRequest:
        friend_request = await self.repo.get_request(request_id)
        if not friend_request:
            raise NotFoundError("Friend request not found", "REQUEST_NOT_FOUND")

        owner_id = friend_request.receiver_id if as_receiver else friend_request.sender_id
        if owner_id != user_id:
            if as_receiver:
                raise AuthorizationError("Only the receiver can respond to this request", "NOT_RECEIVER")
            raise AuthorizationError("Only the sender can cancel this request", "NOT_SENDER")

        if friend_request.status != FriendRequestStatus.PENDING.value:
            raise ConflictError(f"Friend request is already {friend_request.status}", "REQUEST_NOT_PENDING")

        if ensure_aware(friend_request.expires_at) <= utcnow():
            await self.repo.set_request_status(friend_request, FriendRequestStatus.EXPIRED)
            await self.db.commit()
            raise GoneError("Friend request has expired", "REQUEST_EXPIRED")
        return friend_request

    async def _accept(self, friend_request: FriendRequest, requester: User, accepter: User) -> int:
        """Accept in one transaction, then push and record activity"""
        try:
            await self.repo.set_request_status(friend_request, FriendRequestStatus.ACCEPTED)
            friendship = await self.repo.create_friendship(requester.id, accepter.id)
            dispatcher = self.hub.dispatcher
            to_requester = await dispatcher.stage(
                self.db, requester.id, friend_accepted_notification(accepter, friendship.id)
            )
            to_accepter = await dispatcher.stage(
                self.db, accepter.id, now_friends_notification(requester, friendship.id)
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("You are already friends with this user", "ALREADY_FRIENDS")

        logger.info(f"Friendship {friendship.id} created between {requester.id} and {accepter.id}")
        for user_id, record in ((requester.id, to_requester), (accepter.id, to_accepter)):
            if record:
                await self.hub.dispatcher.push(user_id, record)

        for user, friend in ((requester, accepter), (accepter, requester)):
            await self.hub.activity.record(
                user.id,
                ActivityType.FRIEND_ADDED,
                {"friend_id": friend.id, "friend_name": friend.display_name},
            )
        return friendship.id

    @staticmethod
    def _request_out(friend_request: FriendRequest, sender: User, receiver: User) -> FriendRequestOut:
        # The relationships are not loaded on a freshly inserted row
        return FriendRequestOut(
            id=friend_request.id,
            sender_id=friend_request.sender_id,
            receiver_id=friend_request.receiver_id,
            status=friend_request.status,
            message=friend_request.message,
            created_at=friend_request.created_at,
            expires_at=friend_request.expires_at,
            sender=UserSummary.model_validate(sender),
            receiver=UserSummary.model_validate(receiver),
        )

    # Friends

    async def list_friends(self, user_id: int, limit: int = 50, offset: int = 0, online_only: bool = False) -> FriendsList:
        """Friends with their presence as ``user_id`` is allowed to see it"""
        if online_only:
            # Reachability is only known in memory, so filter before paginating
            rows, _ = await self.repo.get_friends(user_id, limit=10 ** 6, offset=0)
        else:
            rows, total_count = await self.repo.get_friends(user_id, limit, offset)

        presence = await self.hub.presence.masked_presence(user_id, [user.id for user, _ in rows])
        friends = [
            FriendOut(
                **UserSummary.model_validate(user).model_dump(),
                **presence[user.id],
                friends_since=friendship.created_at
            )
            for user, friendship in rows
        ]
        if online_only:
            friends = [friend for friend in friends if friend.is_online]
            total_count = len(friends)
            friends = friends[offset:offset + limit]
        return FriendsList(friends=friends, total_count=total_count)

    async def remove_friend(self, user: User, friend_id: int) -> bool:
        """Remove a friendship along with its request history and notifications"""
        if user.id == friend_id:
            raise ValidationError("Cannot unfriend yourself", "SELF_TARGET")
        if not await self.repo.are_friends(user.id, friend_id):
            raise NotFoundError("Friendship not found", "FRIENDSHIP_NOT_FOUND")

        await self.repo.delete_friendship(user.id, friend_id)
        await self.repo.delete_requests_between(user.id, friend_id)
        await self.notifications.delete_between(user.id, friend_id, RELATIONSHIP_NOTIFICATIONS)
        record = await self.hub.dispatcher.stage(self.db, friend_id, friend_removed_notification(user))
        await self.db.commit()

        logger.info(f"User {user.id} removed friend {friend_id}")
        if record:
            await self.hub.dispatcher.push(friend_id, record)
        removed_at = isoformat(utcnow())
        registry = self.hub.registry
        await registry.emit_to_user(user.id, "friend:removed", {"friend_id": friend_id, "removed_at": removed_at})
        await registry.emit_to_user(friend_id, "friend:removed", {"friend_id": user.id, "removed_at": removed_at})
        return True

    # Blocks

    async def block_user(self, blocker: User, blocked_id: int, reason: Optional[str] = None) -> BlockedUserOut:
        """Block a user, dissolving any friendship and pending requests"""
        if blocker.id == blocked_id:
            raise ValidationError("Cannot block yourself", "SELF_BLOCK")
        if reason and len(reason) > BLOCK_REASON_MAX_LENGTH:
            raise ValidationError(f"Reason must be {BLOCK_REASON_MAX_LENGTH} characters or less", "REASON_TOO_LONG")

        blocked_user = await self.users.get_by_id(blocked_id)
        if not blocked_user:
            raise NotFoundError("User not found", "USER_NOT_FOUND")
        if await self.repo.is_blocked(blocker.id, blocked_id):
            raise ConflictError("User is already blocked", "ALREADY_BLOCKED")

        try:
            block = await self.repo.create_block(blocker.id, blocked_id, reason)
            was_friend = await self.repo.delete_friendship(blocker.id, blocked_id)
            cancelled = await self.repo.cancel_pending_between(blocker.id, blocked_id)
            await self.notifications.delete_between(blocker.id, blocked_id)
            record = await self.hub.dispatcher.stage(self.db, blocker.id, user_blocked_notification(blocked_user))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("User is already blocked", "ALREADY_BLOCKED")

        logger.info(
            f"User {blocker.id} blocked {blocked_id} "
            f"(friendship removed: {was_friend}, requests cancelled: {cancelled})"
        )
        if record:
            await self.hub.dispatcher.push(blocker.id, record)
        if was_friend:
            # The blocked side only learns that the friendship is gone
            await self.hub.registry.emit_to_user(
                blocked_id, "friend:removed", {"friend_id": blocker.id, "removed_at": isoformat(utcnow())}
            )
        return BlockedUserOut(
            id=block.id,
            blocked_id=blocked_id,
            reason=block.reason,
            created_at=block.created_at,
            blocked=UserSummary.model_validate(blocked_user),
        )

    async def unblock_user(self, blocker: User, blocked_id: int) -> bool:
        if not await self.repo.delete_block(blocker.id, blocked_id):
            raise NotFoundError("User is not blocked", "NOT_BLOCKED")
        await self.db.commit()
        logger.info(f"User {blocker.id} unblocked {blocked_id}")
        return True

    async def list_blocked(self, user_id: int, limit: int = 50, offset: int = 0) -> Tuple[List[BlockedUserOut], int]:
        blocks, total_count = await self.repo.list_blocked(user_id, limit, offset)
        return [BlockedUserOut.model_validate(block) for block in blocks], total_count

    async def block_status(self, user_id: int, other_id: int) -> BlockStatus:
        return BlockStatus(
            user_id=other_id,
            blocked_by_me=await self.repo.is_blocked(user_id, other_id),
            blocked_me=await self.repo.is_blocked(other_id, user_id),
        )


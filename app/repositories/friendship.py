from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import selectinload
from typing import List, Optional, Set, Tuple

from app.models.friendship import BlockedUser, FriendRequest, Friendship
from app.models.user import User
from app.schemas.friendship import FriendRequestStatus, FriendshipStatus
from app.utils.time import utcnow


def canonical_pair(user1_id: int, user2_id: int) -> Tuple[int, int]:
    """Friendships are stored with the smaller id first"""
    return (user1_id, user2_id) if user1_id < user2_id else (user2_id, user1_id)


class FriendshipRepository:
    """Reads and writes for friendships, friend requests and blocks.

    Methods flush but never commit; the calling service owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # Friendships

    async def get_friendship(self, user1_id: int, user2_id: int) -> Optional[Friendship]:
        """Get the friendship between two users, in either argument order"""
        user_a_id, user_b_id = canonical_pair(user1_id, user2_id)
        stmt = select(Friendship).where(
            and_(
                Friendship.user_a_id == user_a_id,
                Friendship.user_b_id == user_b_id,
                Friendship.status == FriendshipStatus.ACTIVE.value
            )
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def are_friends(self, user1_id: int, user2_id: int) -> bool:
        if user1_id == user2_id:
            return False
        return await self.get_friendship(user1_id, user2_id) is not None

    async def friend_ids(self, user_id: int) -> List[int]:
        stmt = select(Friendship.user_a_id, Friendship.user_b_id).where(
            and_(
                or_(Friendship.user_a_id == user_id, Friendship.user_b_id == user_id),
                Friendship.status == FriendshipStatus.ACTIVE.value
            )
        )
        result = await self.db.execute(stmt)
        return [b if a == user_id else a for a, b in result.all()]

    async def get_friends(
        self, user_id: int, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Tuple[User, Friendship]], int]:
        """Get friends with their friendship rows, paginated by name"""
        friends_stmt = select(User, Friendship).join(
            Friendship,
            or_(
                and_(Friendship.user_a_id == user_id, Friendship.user_b_id == User.id),
                and_(Friendship.user_b_id == user_id, Friendship.user_a_id == User.id)
            )
        ).where(
            Friendship.status == FriendshipStatus.ACTIVE.value
        )

        count_stmt = select(func.count()).select_from(friends_stmt.subquery())
        total_count = (await self.db.execute(count_stmt)).scalar()

        friends_stmt = friends_stmt.order_by(
            func.coalesce(User.full_name, User.username), User.id
        ).offset(offset).limit(limit)
        friends_result = await self.db.execute(friends_stmt)
        return [(user, friendship) for user, friendship in friends_result.all()], total_count

    async def create_friendship(self, user1_id: int, user2_id: int) -> Friendship:
        user_a_id, user_b_id = canonical_pair(user1_id, user2_id)
        friendship = Friendship(
            user_a_id=user_a_id,
            user_b_id=user_b_id,
            status=FriendshipStatus.ACTIVE.value
        )
        self.db.add(friendship)
        await self.db.flush()
        return friendship

    async def delete_friendship(self, user1_id: int, user2_id: int) -> bool:
        user_a_id, user_b_id = canonical_pair(user1_id, user2_id)
        result = await self.db.execute(
            delete(Friendship).where(
                and_(Friendship.user_a_id == user_a_id, Friendship.user_b_id == user_b_id)
            )
        )
        return result.rowcount > 0

    # Friend requests

    @staticmethod
    def _between(user1_id: int, user2_id: int):
        return or_(
            and_(FriendRequest.sender_id == user1_id, FriendRequest.receiver_id == user2_id),
            and_(FriendRequest.sender_id == user2_id, FriendRequest.receiver_id == user1_id)
        )

    async def get_request(self, request_id: int) -> Optional[FriendRequest]:
        """Get a specific friend request with both users loaded"""
        stmt = select(FriendRequest).options(
            selectinload(FriendRequest.sender),
            selectinload(FriendRequest.receiver)
        ).where(FriendRequest.id == request_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_pending_request(
        self, sender_id: int, receiver_id: int, now: Optional[datetime] = None
    ) -> Optional[FriendRequest]:
        """Pending, unexpired request in the given direction"""
        now = now or utcnow()
        stmt = select(FriendRequest).where(
            and_(
                FriendRequest.sender_id == sender_id,
                FriendRequest.receiver_id == receiver_id,
                FriendRequest.status == FriendRequestStatus.PENDING.value,
                FriendRequest.expires_at > now
            )
        ).order_by(FriendRequest.created_at.desc()).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_request(
        self, sender_id: int, receiver_id: int, message: Optional[str], expires_at: datetime
    ) -> FriendRequest:
        friend_request = FriendRequest(
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=FriendRequestStatus.PENDING.value,
            message=message,
            expires_at=expires_at
        )
        self.db.add(friend_request)
        await self.db.flush()
        return friend_request

    async def purge_stale_requests(self, sender_id: int, receiver_id: int, now: Optional[datetime] = None) -> int:
        """Delete terminal or expired requests in one direction so a new one can be made"""
        now = now or utcnow()
        result = await self.db.execute(
            delete(FriendRequest).where(
                and_(
                    FriendRequest.sender_id == sender_id,
                    FriendRequest.receiver_id == receiver_id,
                    or_(
                        FriendRequest.status != FriendRequestStatus.PENDING.value,
                        FriendRequest.expires_at <= now
                    )
                )
            )
        )
        return result.rowcount

    async def delete_requests_between(self, user1_id: int, user2_id: int) -> int:
        result = await self.db.execute(delete(FriendRequest).where(self._between(user1_id, user2_id)))
        return result.rowcount

    async def set_request_status(self, friend_request: FriendRequest, status: FriendRequestStatus) -> FriendRequest:
        friend_request.status = status.value
        friend_request.updated_at = utcnow()
        await self.db.flush()
        return friend_request

    async def cancel_pending_between(self, user1_id: int, user2_id: int) -> int:
        result = await self.db.execute(
            update(FriendRequest).where(
                and_(
                    self._between(user1_id, user2_id),
                    FriendRequest.status == FriendRequestStatus.PENDING.value
                )
            ).values(status=FriendRequestStatus.CANCELLED.value, updated_at=utcnow())
        )
        return result.rowcount

    async def _list_pending(self, column, user_id: int, now: datetime, limit: int, offset: int):
        base = select(FriendRequest).where(
            and_(
                column == user_id,
                FriendRequest.status == FriendRequestStatus.PENDING.value,
                FriendRequest.expires_at > now
            )
        )
        total_count = (await self.db.execute(select(func.count()).select_from(base.subquery()))).scalar()
        stmt = base.options(
            selectinload(FriendRequest.sender),
            selectinload(FriendRequest.receiver)
        ).order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc()).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total_count

    async def list_received(
        self, user_id: int, limit: int = 20, offset: int = 0, now: Optional[datetime] = None
    ) -> Tuple[List[FriendRequest], int]:
        return await self._list_pending(FriendRequest.receiver_id, user_id, now or utcnow(), limit, offset)

    async def list_sent(
        self, user_id: int, limit: int = 20, offset: int = 0, now: Optional[datetime] = None
    ) -> Tuple[List[FriendRequest], int]:
        return await self._list_pending(FriendRequest.sender_id, user_id, now or utcnow(), limit, offset)

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Move pending requests past their expiry into the expired state"""
        now = now or utcnow()
        result = await self.db.execute(
            update(FriendRequest).where(
                and_(
                    FriendRequest.status == FriendRequestStatus.PENDING.value,
                    FriendRequest.expires_at <= now
                )
            ).values(status=FriendRequestStatus.EXPIRED.value, updated_at=now)
        )
        return result.rowcount

    # Blocks

    async def is_blocked(self, blocker_id: int, blocked_id: int) -> bool:
        stmt = select(BlockedUser.id).where(
            and_(BlockedUser.blocker_id == blocker_id, BlockedUser.blocked_id == blocked_id)
        )
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def is_blocked_either_way(self, user1_id: int, user2_id: int) -> bool:
        stmt = select(BlockedUser.id).where(
            or_(
                and_(BlockedUser.blocker_id == user1_id, BlockedUser.blocked_id == user2_id),
                and_(BlockedUser.blocker_id == user2_id, BlockedUser.blocked_id == user1_id)
            )
        ).limit(1)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def blocked_relations(self, user_id: int) -> Set[int]:
        """Users blocked by, or blocking, ``user_id``"""
        stmt = select(BlockedUser.blocker_id, BlockedUser.blocked_id).where(
            or_(BlockedUser.blocker_id == user_id, BlockedUser.blocked_id == user_id)
        )
        result = await self.db.execute(stmt)
        return {blocked if blocker == user_id else blocker for blocker, blocked in result.all()}

    async def create_block(self, blocker_id: int, blocked_id: int, reason: Optional[str]) -> BlockedUser:
        block = BlockedUser(blocker_id=blocker_id, blocked_id=blocked_id, reason=reason)
        self.db.add(block)
        await self.db.flush()
        return block

    async def delete_block(self, blocker_id: int, blocked_id: int) -> bool:
        result = await self.db.execute(
            delete(BlockedUser).where(
                and_(BlockedUser.blocker_id == blocker_id, BlockedUser.blocked_id == blocked_id)
            )
        )
        return result.rowcount > 0

    async def list_blocked(
        self, blocker_id: int, limit: int = 50, offset: int = 0
    ) -> Tuple[List[BlockedUser], int]:
        base = select(BlockedUser).where(BlockedUser.blocker_id == blocker_id)
        total_count = (await self.db.execute(select(func.count()).select_from(base.subquery()))).scalar()
        stmt = base.options(selectinload(BlockedUser.blocked)).order_by(
            BlockedUser.created_at.desc(), BlockedUser.id.desc()
        ).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total_count

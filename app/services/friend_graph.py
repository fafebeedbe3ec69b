"""Friend-graph read predicates.

Every broadcast consults these before it leaves the process, so storage
errors are logged and answered with the safe value: not friends, blocked,
cannot interact, nobody to tell.
"""

import logging
from typing import Iterable, List, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.repositories.friendship import FriendshipRepository

logger = logging.getLogger(__name__)


class FriendGraph:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def are_friends(self, user1_id: int, user2_id: int) -> bool:
        if user1_id == user2_id:
            return False
        try:
            async with self.session_factory() as db:
                return await FriendshipRepository(db).are_friends(user1_id, user2_id)
        except Exception as e:
            logger.error(f"Friend check failed for {user1_id}/{user2_id}, treating as not friends: {e}")
            return False

    async def is_blocked(self, blocker_id: int, blocked_id: int) -> bool:
        """Directional: has ``blocker_id`` blocked ``blocked_id``"""
        try:
            async with self.session_factory() as db:
                return await FriendshipRepository(db).is_blocked(blocker_id, blocked_id)
        except Exception as e:
            logger.error(f"Block check failed for {blocker_id}->{blocked_id}, treating as blocked: {e}")
            return True

    async def can_interact(self, user1_id: int, user2_id: int) -> bool:
        """Neither user has blocked the other"""
        if user1_id == user2_id:
            return True
        try:
            async with self.session_factory() as db:
                return not await FriendshipRepository(db).is_blocked_either_way(user1_id, user2_id)
        except Exception as e:
            logger.error(f"Interaction check failed for {user1_id}/{user2_id}, denying: {e}")
            return False

    async def friends_of(self, user_id: int) -> List[int]:
        try:
            async with self.session_factory() as db:
                return await FriendshipRepository(db).friend_ids(user_id)
        except Exception as e:
            logger.error(f"Friend list lookup failed for user {user_id}: {e}")
            return []

    async def blocked_relations(self, user_id: int) -> Set[int]:
        """Users on either side of a block with ``user_id``.

        Raises on storage errors; callers that can fail closed should use
        ``interacting_subset`` instead.
        """
        async with self.session_factory() as db:
            return await FriendshipRepository(db).blocked_relations(user_id)

    async def interacting_subset(self, user_id: int, candidates: Iterable[int]) -> List[int]:
        """Keep the candidates ``user_id`` can interact with, preserving order"""
        candidates = [c for c in dict.fromkeys(candidates) if c != user_id]
        if not candidates:
            return []
        try:
            blocked = await self.blocked_relations(user_id)
        except Exception as e:
            logger.error(f"Block lookup failed for user {user_id}, dropping audience: {e}")
            return []
        return [c for c in candidates if c not in blocked]

    async def audience_for(self, user_id: int) -> List[int]:
        """Friends of ``user_id`` that are allowed to hear about them"""
        return await self.interacting_subset(user_id, await self.friends_of(user_id))

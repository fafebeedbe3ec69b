from typing import Dict, Iterable, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.models.user import User


class UserRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[int]) -> Dict[int, User]:
        """Get several users keyed by ID"""
        ids = list(set(user_ids))
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars().all()}

    async def get_blocked_ids(self, user_ids: Iterable[int]) -> List[int]:
        """Return the subset of ``user_ids`` whose accounts are globally blocked"""
        ids = list(set(user_ids))
        if not ids:
            return []
        result = await self.db.execute(
            select(User.id).where(User.id.in_(ids), User.is_blocked.is_(True))
        )
        return list(result.scalars().all())

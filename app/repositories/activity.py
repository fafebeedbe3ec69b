from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete, select, update
from sqlalchemy.orm import selectinload

from app.models.activity import FriendActivity
from app.models.user import User
from app.utils.time import utcnow


class ActivityRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_many(
        self,
        actor_id: int,
        activity_type: str,
        activity_data: Dict[str, Any],
        recipient_ids: Iterable[int]
    ) -> List[FriendActivity]:
        now = utcnow()
        rows = [
            FriendActivity(
                user_id=recipient_id,
                actor_id=actor_id,
                activity_type=activity_type,
                activity_data=activity_data,
                is_visible=True,
                created_at=now
            )
            for recipient_id in recipient_ids
        ]
        self.db.add_all(rows)
        await self.db.flush()
        return rows

    async def feed(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        activity_type: Optional[str] = None,
        since: Optional[datetime] = None,
        excluded_actor_ids: Iterable[int] = ()
    ) -> List[FriendActivity]:
        """Visible entries newest first, skipping globally blocked actors"""
        stmt = select(FriendActivity).join(
            User, User.id == FriendActivity.actor_id
        ).options(
            selectinload(FriendActivity.actor)
        ).where(
            FriendActivity.user_id == user_id,
            FriendActivity.is_visible.is_(True),
            User.is_blocked.is_(False)
        )
        excluded = list(excluded_actor_ids)
        if excluded:
            stmt = stmt.where(FriendActivity.actor_id.not_in(excluded))
        if activity_type:
            stmt = stmt.where(FriendActivity.activity_type == activity_type)
        if since:
            stmt = stmt.where(FriendActivity.created_at >= since)
        stmt = stmt.order_by(
            FriendActivity.created_at.desc(), FriendActivity.id.desc()
        ).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def hide(self, user_id: int, activity_id: int) -> bool:
        result = await self.db.execute(
            update(FriendActivity).where(
                FriendActivity.id == activity_id,
                FriendActivity.user_id == user_id,
                FriendActivity.is_visible.is_(True)
            ).values(is_visible=False)
        )
        return result.rowcount > 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(FriendActivity).where(FriendActivity.created_at < cutoff)
        )
        return result.rowcount

from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select
from sqlalchemy.dialects import postgresql, sqlite

from app.models.presence import UserPresence, UserPresenceSettings
from app.utils.time import utcnow


class PresenceRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self, model):
        """Dialect insert supporting ON CONFLICT"""
        if self.db.get_bind().dialect.name == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    async def get(self, user_id: int) -> Optional[UserPresence]:
        stmt = select(UserPresence).where(UserPresence.user_id == user_id).execution_options(
            populate_existing=True
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[int]) -> Dict[int, UserPresence]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        stmt = select(UserPresence).where(UserPresence.user_id.in_(ids)).execution_options(
            populate_existing=True
        )
        result = await self.db.execute(stmt)
        return {row.user_id: row for row in result.scalars().all()}

    async def upsert(self, user_id: int, **values: Any) -> None:
        """Insert or update a presence row in one statement"""
        values["updated_at"] = utcnow()
        if "socket_count" in values:
            values["socket_count"] = max(0, values["socket_count"])
        stmt = self._insert(UserPresence).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[UserPresence.user_id], set_=values)
        await self.db.execute(stmt)

    async def list_possibly_live(self, limit: int = 500) -> List[UserPresence]:
        """Rows claiming the user is present or connected"""
        stmt = select(UserPresence).where(
            or_(UserPresence.status != "offline", UserPresence.socket_count > 0)
        ).order_by(UserPresence.updated_at).limit(limit).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # Settings

    async def get_settings(self, user_id: int) -> Optional[UserPresenceSettings]:
        stmt = select(UserPresenceSettings).where(UserPresenceSettings.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_settings_many(self, user_ids: Iterable[int]) -> Dict[int, UserPresenceSettings]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        stmt = select(UserPresenceSettings).where(UserPresenceSettings.user_id.in_(ids))
        result = await self.db.execute(stmt)
        return {row.user_id: row for row in result.scalars().all()}

    async def save_settings(self, user_id: int, values: Dict[str, Any]) -> UserPresenceSettings:
        row = await self.get_settings(user_id)
        if row is None:
            row = UserPresenceSettings(user_id=user_id, created_at=utcnow())
            self.db.add(row)
        for field, value in values.items():
            setattr(row, field, value)
        row.updated_at = utcnow()
        await self.db.flush()
        return row


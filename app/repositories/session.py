from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update

from app.models.presence import SocketSession
from app.utils.time import utcnow


class SocketSessionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: int,
        socket_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> SocketSession:
        now = utcnow()
        row = SocketSession(
            user_id=user_id,
            socket_id=socket_id,
            connected_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:255] or None,
            is_active=True
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def touch(self, socket_id: str, at: Optional[datetime] = None) -> int:
        result = await self.db.execute(
            update(SocketSession).where(SocketSession.socket_id == socket_id).values(
                last_activity=at or utcnow(), updated_at=utcnow()
            )
        )
        return result.rowcount

    async def deactivate(self, socket_id: str) -> int:
        result = await self.db.execute(
            update(SocketSession).where(
                SocketSession.socket_id == socket_id, SocketSession.is_active.is_(True)
            ).values(is_active=False, updated_at=utcnow())
        )
        return result.rowcount

    async def deactivate_all(self) -> int:
        """Mark every session inactive; connections do not survive a restart"""
        result = await self.db.execute(
            update(SocketSession).where(SocketSession.is_active.is_(True)).values(
                is_active=False, updated_at=utcnow()
            )
        )
        return result.rowcount

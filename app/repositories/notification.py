from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import selectinload

from app.models.notification import FriendNotification, NotificationPreference
from app.schemas.notification import NotificationCreate, NotificationType
from app.utils.time import utcnow


class NotificationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_unread_duplicate(
        self, user_id: int, sender_id: int, notification_type: NotificationType, since: datetime
    ) -> Optional[FriendNotification]:
        stmt = select(FriendNotification).where(
            and_(
                FriendNotification.user_id == user_id,
                FriendNotification.sender_id == sender_id,
                FriendNotification.type == notification_type.value,
                FriendNotification.is_read.is_(False),
                FriendNotification.created_at >= since
            )
        ).order_by(FriendNotification.created_at.desc()).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, user_id: int, notification: NotificationCreate) -> FriendNotification:
        row = FriendNotification(
            user_id=user_id,
            sender_id=notification.sender_id,
            type=notification.type.value,
            message=notification.message,
            data=notification.data_dict(),
            is_read=False,
            created_at=utcnow()
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def refresh(self, row: FriendNotification, notification: NotificationCreate) -> FriendNotification:
        row.created_at = utcnow()
        row.message = notification.message
        row.data = notification.data_dict()
        await self.db.flush()
        return row

    async def get(self, notification_id: int, user_id: int) -> Optional[FriendNotification]:
        stmt = select(FriendNotification).where(
            FriendNotification.id == notification_id, FriendNotification.user_id == user_id
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(
        self, user_id: int, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> List[FriendNotification]:
        stmt = select(FriendNotification).options(
            selectinload(FriendNotification.sender)
        ).where(FriendNotification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(FriendNotification.is_read.is_(False))
        stmt = stmt.order_by(
            FriendNotification.created_at.desc(), FriendNotification.id.desc()
        ).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def unread_count(self, user_id: int) -> int:
        stmt = select(func.count(FriendNotification.id)).where(
            FriendNotification.user_id == user_id, FriendNotification.is_read.is_(False)
        )
        return (await self.db.execute(stmt)).scalar() or 0

    async def mark_read(self, user_id: int, notification_ids: Iterable[int]) -> int:
        """Mark owned, unread notifications as read"""
        ids = list(notification_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            update(FriendNotification).where(
                FriendNotification.id.in_(ids),
                FriendNotification.user_id == user_id,
                FriendNotification.is_read.is_(False)
            ).values(is_read=True, read_at=utcnow())
        )
        return result.rowcount

    async def mark_all_read(self, user_id: int) -> int:
        result = await self.db.execute(
            update(FriendNotification).where(
                FriendNotification.user_id == user_id, FriendNotification.is_read.is_(False)
            ).values(is_read=True, read_at=utcnow())
        )
        return result.rowcount

    async def delete(self, user_id: int, notification_ids: Iterable[int]) -> int:
        ids = list(notification_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            delete(FriendNotification).where(
                FriendNotification.id.in_(ids), FriendNotification.user_id == user_id
            )
        )
        return result.rowcount

    async def delete_between(
        self, user1_id: int, user2_id: int, types: Optional[Iterable[NotificationType]] = None
    ) -> int:
        """Delete notifications exchanged between two users, optionally by type"""
        stmt = delete(FriendNotification).where(
            or_(
                and_(FriendNotification.user_id == user1_id, FriendNotification.sender_id == user2_id),
                and_(FriendNotification.user_id == user2_id, FriendNotification.sender_id == user1_id)
            )
        )
        if types is not None:
            stmt = stmt.where(FriendNotification.type.in_([t.value for t in types]))
        result = await self.db.execute(stmt)
        return result.rowcount

    # Preferences

    async def get_preference(self, user_id: int, notification_type: NotificationType) -> Optional[NotificationPreference]:
        stmt = select(NotificationPreference).where(
            NotificationPreference.user_id == user_id,
            NotificationPreference.notification_type == notification_type.value
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_preferences(self, user_id: int) -> List[NotificationPreference]:
        stmt = select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def save_preference(self, user_id: int, notification_type: NotificationType, **values) -> NotificationPreference:
        row = await self.get_preference(user_id, notification_type)
        if row is None:
            row = NotificationPreference(user_id=user_id, notification_type=notification_type.value)
            self.db.add(row)
        for field, value in values.items():
            setattr(row, field, value)
        row.updated_at = utcnow()
        await self.db.flush()
        return row

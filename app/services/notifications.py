"""Notification dispatcher.

``deliver`` runs the full pipeline for one recipient:

1. suppress when sender and recipient cannot interact
2. drop when the recipient disabled the type
3. queue when the recipient is throttled or already has queued items
4. persist, refreshing a recent unread ``friend_online`` from the same sender
5. push to every live connection and wait for acknowledgements

Live delivery is at-least-once; the stored row is what guarantees the user
eventually sees the notification.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.database import SchemaCapabilities
from app.models.notification import FriendNotification
from app.repositories.notification import NotificationRepository
from app.repositories.user import UserRepository
from app.schemas.notification import (
    BatchResult, NotificationCreate, NotificationOut, NotificationPreferenceOut,
    NotificationPreferenceUpdate, NotificationsPage, NotificationType, default_preference
)
from app.services.connections import ConnectionRegistry
from app.services.friend_graph import FriendGraph
from app.utils.throttle import MemoryThrottle, SchemaWarning
from app.utils.time import isoformat, utcnow

logger = logging.getLogger(__name__)

ACK_RECEIVED = "received"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    STORED = "stored"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    DISABLED = "disabled"

    @property
    def accepted(self) -> bool:
        return self in (DeliveryOutcome.DELIVERED, DeliveryOutcome.QUEUED)


@dataclass
class QueuedNotification:
    notification: Optional[NotificationCreate] = None
    # Already persisted rows only need the live push
    record: Optional[Dict[str, Any]] = None


def is_received(ack: Any) -> bool:
    if isinstance(ack, dict):
        return ack.get("status") == ACK_RECEIVED
    return ack == ACK_RECEIVED


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ConnectionRegistry,
        graph: FriendGraph,
        settings: Settings,
        capabilities: SchemaCapabilities,
        throttle=None,
        email_service=None,
        schema_warning: Optional[SchemaWarning] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.graph = graph
        self.settings = settings
        self.capabilities = capabilities
        self.throttle = throttle if throttle is not None else MemoryThrottle(settings.NOTIFICATION_THROTTLE_SECONDS)
        self.email_service = email_service
        self.schema_warning = schema_warning or SchemaWarning(settings.SCHEMA_WARNING_INTERVAL_SECONDS)

        self.queues: Dict[int, Deque[QueuedNotification]] = {}
        self.dropped_total = 0
        self._processing = False
        self._email_tasks: Set[asyncio.Task] = set()

    # Delivery pipeline

    async def notify(self, user_id: int, notification: NotificationCreate) -> bool:
        """True when the notification was delivered live or queued for delivery"""
        return (await self.deliver(user_id, notification)).accepted

    async def deliver(self, user_id: int, notification: NotificationCreate) -> DeliveryOutcome:
        sender_id = notification.sender_id
        if sender_id is not None and not await self.graph.can_interact(sender_id, user_id):
            logger.debug(f"Suppressed {notification.type.value} from {sender_id} to {user_id}: blocked")
            return DeliveryOutcome.SUPPRESSED

        preference = await self.get_preference(user_id, notification.type)
        if not preference.enabled:
            logger.debug(f"Notification {notification.type.value} disabled for user {user_id}")
            return DeliveryOutcome.DISABLED

        if self.queues.get(user_id) or await self.throttle.is_throttled(user_id):
            self._enqueue(user_id, QueuedNotification(notification=notification))
            return DeliveryOutcome.QUEUED

        return await self._persist_and_push(user_id, notification, preference)

    async def notify_many(self, user_ids: Iterable[int], notification: NotificationCreate) -> BatchResult:
        """Fan one notification out in batches; a failing member never stops the rest"""
        ids = list(dict.fromkeys(user_ids))
        result = BatchResult(total=len(ids))
        size = max(1, self.settings.NOTIFICATION_BATCH_SIZE)
        batches = [ids[i:i + size] for i in range(0, len(ids), size)]

        for index, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(self.deliver(user_id, notification) for user_id in batch),
                return_exceptions=True
            )
            for user_id, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Notification {notification.type.value} to user {user_id} failed: {outcome}")
                    result.failed += 1
                elif outcome == DeliveryOutcome.DELIVERED:
                    result.delivered += 1
                elif outcome == DeliveryOutcome.QUEUED:
                    result.queued += 1
                elif outcome == DeliveryOutcome.STORED:
                    result.stored += 1
                elif outcome == DeliveryOutcome.FAILED:
                    result.failed += 1
                else:
                    result.skipped += 1
            if index < len(batches) - 1:
                await asyncio.sleep(self.settings.NOTIFICATION_BATCH_PAUSE_SECONDS)

        if ids:
            logger.info(
                f"Batch {notification.type.value}: {result.delivered} delivered, {result.queued} queued, "
                f"{result.stored} stored, {result.failed} failed, {result.skipped} skipped of {result.total}"
            )
        return result

    async def stage(self, db: AsyncSession, user_id: int, notification: NotificationCreate) -> Optional[Dict[str, Any]]:
        """Persist inside the caller's transaction; push the result after commit.

        Returns None when the recipient disabled the type.
        """
        preference = await self._preference(db, user_id, notification.type)
        if not preference.enabled:
            return None
        if not self._store_enabled():
            return self._unsaved_record(user_id, notification)
        row = await self._store(db, user_id, notification)
        return self.serialize(row)

    async def push(self, user_id: int, record: Dict[str, Any]) -> DeliveryOutcome:
        """Live half of ``stage``"""
        try:
            preference = await self.get_preference(user_id, record["type"])
            self._maybe_email(user_id, record["message"], record["type"], preference)
            if self.queues.get(user_id) or await self.throttle.is_throttled(user_id):
                self._enqueue(user_id, QueuedNotification(record=record))
                return DeliveryOutcome.QUEUED
            return await self._push(user_id, record, preference)
        except Exception as e:
            logger.error(f"Push of notification {record.get('id')} to user {user_id} failed: {e}")
            return DeliveryOutcome.FAILED

    async def process_queue(self) -> int:
        """Send one queued item per user that is no longer throttled.

        Returns how many of the sent items were delivered live.
        """
        if self._processing or not self.queues:
            return 0
        self._processing = True
        delivered = 0
        try:
            for user_id in list(self.queues):
                queue = self.queues.get(user_id)
                if not queue:
                    self.queues.pop(user_id, None)
                    continue
                if await self.throttle.is_throttled(user_id):
                    continue
                item = queue.popleft()
                if not queue:
                    self.queues.pop(user_id, None)
                try:
                    if await self._send_queued(user_id, item) == DeliveryOutcome.DELIVERED:
                        delivered += 1
                except Exception:
                    logger.exception(f"Queued notification for user {user_id} failed")
        finally:
            self._processing = False
        return delivered

    def queued_count(self, user_id: Optional[int] = None) -> int:
        if user_id is not None:
            return len(self.queues.get(user_id, ()))
        return sum(len(queue) for queue in self.queues.values())

    # Reads and read-state changes

    async def get_notifications(
        self, user_id: int, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> NotificationsPage:
        if not self._store_enabled():
            return NotificationsPage(notifications=[], unread_count=0, limit=limit, offset=offset)
        async with self.session_factory() as db:
            repo = NotificationRepository(db)
            rows = await repo.list_for_user(user_id, unread_only, limit, offset)
            unread = await repo.unread_count(user_id)
        return NotificationsPage(
            notifications=[NotificationOut.model_validate(row) for row in rows],
            unread_count=unread,
            limit=limit,
            offset=offset
        )

    async def unread_count(self, user_id: int) -> int:
        if not self._store_enabled():
            return 0
        async with self.session_factory() as db:
            return await NotificationRepository(db).unread_count(user_id)

    async def mark_read(self, notification_id: int, user_id: int) -> bool:
        """Only the recipient can mark, and only while unread"""
        return await self.mark_many_read(user_id, [notification_id]) > 0

    async def mark_many_read(self, user_id: int, notification_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(notification_ids))
        if not ids or not self._store_enabled():
            return 0
        async with self.session_factory() as db:
            count = await NotificationRepository(db).mark_read(user_id, ids)
            await db.commit()
        if count:
            await self.registry.emit_to_user(user_id, "notification:read", {"notification_ids": ids})
        return count

    async def mark_all_read(self, user_id: int) -> int:
        if not self._store_enabled():
            return 0
        async with self.session_factory() as db:
            count = await NotificationRepository(db).mark_all_read(user_id)
            await db.commit()
        if count:
            await self.registry.emit_to_user(user_id, "notification:read", {"all": True, "count": count})
        return count

    async def delete(self, notification_id: int, user_id: int) -> bool:
        return await self.delete_many(user_id, [notification_id]) > 0

    async def delete_many(self, user_id: int, notification_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(notification_ids))
        if not ids or not self._store_enabled():
            return 0
        async with self.session_factory() as db:
            count = await NotificationRepository(db).delete(user_id, ids)
            await db.commit()
        return count

    # Preferences

    async def get_preference(self, user_id: int, notification_type) -> NotificationPreferenceOut:
        notification_type = NotificationType(notification_type)
        if not self.capabilities.has("notification_preferences"):
            return default_preference(notification_type)
        try:
            async with self.session_factory() as db:
                return await self._preference(db, user_id, notification_type)
        except Exception as e:
            logger.warning(f"Preference lookup failed for user {user_id}, using defaults: {e}")
            return default_preference(notification_type)

    async def get_preferences(self, user_id: int) -> List[NotificationPreferenceOut]:
        stored = {}
        if self.capabilities.has("notification_preferences"):
            async with self.session_factory() as db:
                rows = await NotificationRepository(db).list_preferences(user_id)
            stored = {row.notification_type: row for row in rows}
        return [
            NotificationPreferenceOut.model_validate(stored[t.value]) if t.value in stored else default_preference(t)
            for t in NotificationType
        ]

    async def update_preferences(
        self, user_id: int, updates: List[NotificationPreferenceUpdate]
    ) -> List[NotificationPreferenceOut]:
        if not self.capabilities.has("notification_preferences"):
            self.schema_warning.warn("notification preferences", "notification_preferences")
            return await self.get_preferences(user_id)
        async with self.session_factory() as db:
            repo = NotificationRepository(db)
            for update in updates:
                current = await self._preference(db, user_id, update.notification_type)
                values = current.model_dump(exclude={"notification_type"})
                values.update(update.model_dump(exclude={"notification_type"}, exclude_none=True))
                await repo.save_preference(user_id, update.notification_type, **values)
            await db.commit()
        return await self.get_preferences(user_id)

    # Internals

    def _store_enabled(self) -> bool:
        if self.capabilities.has("friend_notifications"):
            return True
        self.schema_warning.warn("notification storage", "friend_notifications")
        return False

    async def _preference(self, db: AsyncSession, user_id: int, notification_type: NotificationType) -> NotificationPreferenceOut:
        if not self.capabilities.has("notification_preferences"):
            return default_preference(notification_type)
        row = await NotificationRepository(db).get_preference(user_id, notification_type)
        if row is None:
            return default_preference(notification_type)
        return NotificationPreferenceOut.model_validate(row)

    async def _store(self, db: AsyncSession, user_id: int, notification: NotificationCreate) -> FriendNotification:
        repo = NotificationRepository(db)
        if notification.type == NotificationType.FRIEND_ONLINE and notification.sender_id is not None:
            since = utcnow() - timedelta(seconds=self.settings.NOTIFICATION_DEDUP_WINDOW_SECONDS)
            existing = await repo.find_unread_duplicate(user_id, notification.sender_id, notification.type, since)
            if existing is not None:
                logger.debug(f"Refreshing friend_online notification {existing.id} for user {user_id}")
                return await repo.refresh(existing, notification)
        return await repo.create(user_id, notification)

    async def _persist_and_push(
        self, user_id: int, notification: NotificationCreate, preference: NotificationPreferenceOut
    ) -> DeliveryOutcome:
        try:
            if self._store_enabled():
                async with self.session_factory() as db:
                    row = await self._store(db, user_id, notification)
                    await db.commit()
                    record = self.serialize(row)
            else:
                record = self._unsaved_record(user_id, notification)
        except Exception as e:
            logger.error(f"Could not store {notification.type.value} for user {user_id}: {e}")
            return DeliveryOutcome.FAILED

        self._maybe_email(user_id, notification.message, notification.type.value, preference)
        return await self._push(user_id, record, preference)

    async def _push(
        self, user_id: int, record: Dict[str, Any], preference: NotificationPreferenceOut
    ) -> DeliveryOutcome:
        connection_ids = self.registry.get_connections_for(user_id)
        if not connection_ids:
            logger.debug(f"User {user_id} not connected, {record['type']} stored for later")
            return DeliveryOutcome.STORED

        payload = dict(record)
        payload["preferences"] = {
            "sound": preference.sound_enabled,
            "desktop": preference.desktop_enabled,
        }
        results = await asyncio.gather(
            *(self._deliver_to(cid, payload) for cid in connection_ids),
            return_exceptions=True
        )
        acked = sum(1 for result in results if result is True)
        await self.throttle.touch(user_id)

        logger.info(
            f"Notification {record['type']} sent to user {user_id} "
            f"({acked}/{len(connection_ids)} connections acknowledged)"
        )
        return DeliveryOutcome.DELIVERED if acked else DeliveryOutcome.FAILED

    async def _deliver_to(self, connection_id: str, payload: Dict[str, Any]) -> bool:
        ack = await self.registry.transport.emit_with_ack(
            connection_id, "notification", payload, timeout=self.settings.NOTIFICATION_ACK_TIMEOUT_SECONDS
        )
        return is_received(ack)

    async def _send_queued(self, user_id: int, item: QueuedNotification) -> DeliveryOutcome:
        if item.record is not None:
            preference = await self.get_preference(user_id, item.record["type"])
            return await self._push(user_id, item.record, preference)
        preference = await self.get_preference(user_id, item.notification.type)
        if not preference.enabled:
            return DeliveryOutcome.DISABLED
        return await self._persist_and_push(user_id, item.notification, preference)

    def _enqueue(self, user_id: int, item: QueuedNotification) -> None:
        queue = self.queues.setdefault(user_id, deque())
        if len(queue) >= self.settings.NOTIFICATION_MAX_QUEUE_PER_USER:
            queue.popleft()
            self.dropped_total += 1
            logger.warning(f"Notification queue full for user {user_id}, dropped oldest item")
        queue.append(item)
        logger.debug(f"Queued notification for user {user_id} ({len(queue)} waiting)")

    def _maybe_email(self, user_id: int, message: str, notification_type: str, preference: NotificationPreferenceOut) -> None:
        if self.email_service is None or not self.settings.EMAIL_NOTIFICATIONS_ENABLED or not preference.email_enabled:
            return
        task = asyncio.create_task(self._send_email(user_id, message, notification_type))
        self._email_tasks.add(task)
        task.add_done_callback(self._email_tasks.discard)

    async def _send_email(self, user_id: int, message: str, notification_type: str) -> None:
        try:
            async with self.session_factory() as db:
                user = await UserRepository(db).get_by_id(user_id)
            if user is None or not user.email:
                return
            await self.email_service.send_notification_email(user.email, user.display_name, message, notification_type)
        except Exception as e:
            logger.warning(f"Email copy of {notification_type} for user {user_id} failed: {e}")

    @staticmethod
    def serialize(row: FriendNotification) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "sender_id": row.sender_id,
            "type": row.type,
            "message": row.message,
            "data": row.data or {},
            "is_read": row.is_read,
            "created_at": isoformat(row.created_at),
        }

    @staticmethod
    def _unsaved_record(user_id: int, notification: NotificationCreate) -> Dict[str, Any]:
        return {
            "id": None,
            "user_id": user_id,
            "sender_id": notification.sender_id,
            "type": notification.type.value,
            "message": notification.message,
            "data": notification.data_dict(),
            "is_read": False,
            "created_at": isoformat(utcnow()),
        }

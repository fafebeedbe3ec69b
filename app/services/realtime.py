"""Per-process container for the realtime components.

The hub builds the registry, graph, dispatcher, activity aggregator and
presence engine around one transport and one session factory, wires the
registry's signals into the presence engine, and owns the background loops.
The application keeps a single instance on ``app.state.hub``; tests build
their own.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings
from app.core.database import SchemaCapabilities
from app.core.redis import RedisClient
from app.repositories.friendship import FriendshipRepository
from app.repositories.user import UserRepository
from app.schemas.notification import friend_message_notification
from app.services.activity import ActivityFeedAggregator
from app.services.connections import ConnectionRegistry
from app.services.friend_graph import FriendGraph
from app.services.notifications import NotificationDispatcher
from app.services.presence import PresenceEngine
from app.utils.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.utils.throttle import SchemaWarning, build_throttle
from app.utils.time import isoformat, utcnow

logger = logging.getLogger(__name__)

FRIEND_MESSAGE_MAX_LENGTH = 2000


class RealtimeHub:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        transport,
        capabilities: Optional[SchemaCapabilities] = None,
        redis_client: Optional[RedisClient] = None,
        email_service=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.transport = transport
        self.capabilities = capabilities or SchemaCapabilities.everything()
        self.schema_warning = SchemaWarning(settings.SCHEMA_WARNING_INTERVAL_SECONDS, clock=clock)

        def throttle(namespace: str, window: float):
            return build_throttle(namespace, window, settings, redis_client, clock=clock)

        self.graph = FriendGraph(session_factory)
        self.registry = ConnectionRegistry(
            transport, session_factory, settings, self.capabilities,
            schema_warning=self.schema_warning, clock=clock,
        )
        self.dispatcher = NotificationDispatcher(
            session_factory, self.registry, self.graph, settings, self.capabilities,
            throttle=throttle("notifications", settings.NOTIFICATION_THROTTLE_SECONDS),
            email_service=email_service,
            schema_warning=self.schema_warning,
        )
        self.activity = ActivityFeedAggregator(
            session_factory, self.registry, self.graph, settings, self.capabilities,
            throttle=throttle("activity", settings.ACTIVITY_THROTTLE_SECONDS),
            schema_warning=self.schema_warning,
        )
        self.presence = PresenceEngine(
            session_factory, self.registry, self.graph, self.dispatcher, self.activity,
            settings, self.capabilities,
            throttle=throttle("presence", settings.PRESENCE_UPDATE_THROTTLE_SECONDS),
            schema_warning=self.schema_warning,
        )
        self.registry.add_listener(self.presence)

        # Last typing state per (sender, recipient)
        self.typing: dict = {}
        self._tasks: List[asyncio.Task] = []

    # Lifecycle

    async def start(self) -> None:
        await self.registry.reset_persisted_sessions()
        settings = self.settings
        self._tasks = [
            self._every("idle-sweep", settings.CONNECTION_CLEANUP_INTERVAL_SECONDS, self.registry.sweep_idle),
            self._every("presence-sync", settings.PRESENCE_SYNC_INTERVAL_SECONDS, self.sync_presence),
            self._every("notification-queue", settings.NOTIFICATION_THROTTLE_SECONDS, self.dispatcher.process_queue),
            self._every("activity-sweep", settings.ACTIVITY_CLEANUP_INTERVAL_SECONDS, self.activity.sweep),
            self._every("request-expiry", settings.FRIEND_REQUEST_SWEEP_INTERVAL_SECONDS, self.expire_requests),
            self._every("heartbeat", settings.HEARTBEAT_INTERVAL_SECONDS, self.heartbeat),
        ]
        logger.info(f"Realtime hub started with {len(self._tasks)} background loops")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for connection_id in list(self.registry.connections):
            await self.transport.close(connection_id, code=1001, reason="Server shutting down")
        logger.info("Realtime hub stopped")

    def _every(self, name: str, interval: float, job: Callable[[], Awaitable]) -> asyncio.Task:
        async def loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(f"Background job {name} failed")

        return asyncio.create_task(loop(), name=name)

    # Jobs

    async def sync_presence(self) -> None:
        await self.presence.reconcile()
        await self.presence.sweep_auto_away()

    async def expire_requests(self) -> int:
        if not self.capabilities.has("friend_requests"):
            self.schema_warning.warn("friend request expiry", "friend_requests")
            return 0
        async with self.session_factory() as db:
            count = await FriendshipRepository(db).expire_stale()
            await db.commit()
        if count:
            logger.info(f"Expired {count} pending friend requests")
        return count

    async def heartbeat(self) -> int:
        stats = self.stats()
        sent = 0
        for connection_id in list(self.registry.connections):
            if await self.transport.emit(connection_id, "heartbeat", stats):
                sent += 1
        return sent

    def stats(self) -> dict:
        return {
            **self.registry.stats(),
            "queued_notifications": self.dispatcher.queued_count(),
            "dropped_notifications": self.dispatcher.dropped_total,
            "server_time": isoformat(utcnow()),
        }

    # Friend-to-friend relays

    async def _require_friend(self, sender_id: int, friend_id: int) -> None:
        if sender_id == friend_id:
            raise ValidationError("Cannot target yourself", "SELF_TARGET")
        if not await self.graph.can_interact(sender_id, friend_id) or not await self.graph.are_friends(sender_id, friend_id):
            raise AuthorizationError("Can only interact with friends", "NOT_FRIENDS")

    async def relay_message(self, sender_id: int, friend_id: int, text: str) -> bool:
        """Deliver a direct message to a friend as a ``friend_message`` notification"""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty", "EMPTY_MESSAGE")
        if len(text) > FRIEND_MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message must be {FRIEND_MESSAGE_MAX_LENGTH} characters or less", "MESSAGE_TOO_LONG"
            )
        await self._require_friend(sender_id, friend_id)
        async with self.session_factory() as db:
            sender = await UserRepository(db).get_by_id(sender_id)
        if sender is None:
            raise NotFoundError("User not found", "USER_NOT_FOUND")
        self.typing.pop((sender_id, friend_id), None)
        return await self.dispatcher.notify(friend_id, friend_message_notification(sender, text))

    async def relay_typing(self, sender_id: int, friend_id: int, is_typing: bool) -> int:
        await self._require_friend(sender_id, friend_id)
        key = (sender_id, friend_id)
        if is_typing:
            self.typing[key] = utcnow()
        else:
            self.typing.pop(key, None)
        return await self.registry.emit_to_user(
            friend_id, "friend:typing", {"user_id": sender_id, "is_typing": is_typing}
        )

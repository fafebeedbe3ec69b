"""Presence engine.

Owns ``user_presence``. A user's stored status moves through two paths:
explicit ``set_status`` calls, which are validated and throttled, and forced
transitions driven by connection registry signals, auto-away and the
reconciliation sweep. Both end in ``_broadcast``, which compares what friends
could see before and after the change and only emits when that differs.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings
from app.core.database import SchemaCapabilities
from app.models.presence import UserPresence, UserPresenceSettings
from app.repositories.presence import PresenceRepository
from app.repositories.user import UserRepository
from app.schemas.activity import ActivityType
from app.schemas.notification import friend_offline_notification, friend_online_notification
from app.schemas.presence import (
    ACTIVITY_MESSAGE_MAX_LENGTH, STATUS_ORDER, FriendPresence, PresenceOut,
    PresenceSettingsOut, PresenceSettingsUpdate, PresenceStatus, PrivacyMode
)
from app.services.activity import ActivityFeedAggregator
from app.services.connections import ConnectionListener, ConnectionRegistry
from app.services.friend_graph import FriendGraph
from app.services.notifications import NotificationDispatcher
from app.utils.exceptions import ValidationError
from app.utils.throttle import MemoryThrottle, SchemaWarning
from app.utils.time import isoformat, utcnow

logger = logging.getLogger(__name__)

ONLINE = PresenceStatus.ONLINE.value
AWAY = PresenceStatus.AWAY.value
OFFLINE = PresenceStatus.OFFLINE.value
INVISIBLE = PresenceStatus.INVISIBLE.value
VALID_STATUSES = {status.value for status in PresenceStatus}

# Explicit choice that a reconnect must not turn into online
HIDDEN_PREFERENCES = {INVISIBLE}

PRESENCE_TABLE = "user_presence"
SETTINGS_TABLE = "user_presence_settings"

CAME_ONLINE = "came_online"
WENT_OFFLINE = "went_offline"
CHANGED = "changed"

TRANSITION_EVENTS = {
    CAME_ONLINE: ["friend:online", "friend:came_online"],
    WENT_OFFLINE: ["friend:offline", "friend:went_offline"],
    CHANGED: ["friend:status:changed"],
}


def visible_status(status: Optional[str]) -> str:
    """Status as friends see it"""
    if status is None or status == INVISIBLE:
        return OFFLINE
    return status


@dataclass
class Transition:
    kind: Optional[str] = None
    audience: List[int] = field(default_factory=list)


class PresenceEngine(ConnectionListener):
    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ConnectionRegistry,
        graph: FriendGraph,
        dispatcher: NotificationDispatcher,
        activity: ActivityFeedAggregator,
        settings: Settings,
        capabilities: SchemaCapabilities,
        throttle=None,
        schema_warning: Optional[SchemaWarning] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.graph = graph
        self.dispatcher = dispatcher
        self.activity = activity
        self.settings = settings
        self.capabilities = capabilities
        self.throttle = throttle if throttle is not None else MemoryThrottle(settings.PRESENCE_UPDATE_THROTTLE_SECONDS)
        self.schema_warning = schema_warning or SchemaWarning(settings.SCHEMA_WARNING_INTERVAL_SECONDS)

        # Users moved to away by the sweep; their next activity restores online
        self.auto_away: Set[int] = set()

    @staticmethod
    def validate_update(status: str, activity_message: Optional[str] = None) -> None:
        if status not in VALID_STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(s.value for s in PresenceStatus)}",
                "INVALID_STATUS"
            )
        if activity_message is not None and len(activity_message) > ACTIVITY_MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Activity message must be {ACTIVITY_MESSAGE_MAX_LENGTH} characters or less",
                "MESSAGE_TOO_LONG"
            )

    def _enabled(self) -> bool:
        if self.capabilities.has(PRESENCE_TABLE):
            return True
        self.schema_warning.warn("presence tracking", PRESENCE_TABLE)
        return False

    # Explicit updates

    async def set_status(self, user_id: int, status: str, activity_message: Optional[str] = None) -> bool:
        """Apply a user's own status choice; False when nothing was applied"""
        try:
            self.validate_update(status, activity_message)
        except ValidationError as e:
            logger.debug(f"Ignoring presence update for user {user_id}: {e.message}")
            return False
        if not self._enabled():
            return False

        row = await self._load(user_id)
        old_status = row.status if row else OFFLINE
        old_message = row.activity_message if row else None
        if old_status == status and old_message == activity_message:
            logger.debug(f"Presence for user {user_id} unchanged")
            return False
        if not await self.throttle.acquire(user_id):
            logger.debug(f"Presence update for user {user_id} throttled")
            return False

        await self._save(user_id, status=status, preferred_status=status, activity_message=activity_message)
        self.auto_away.discard(user_id)
        logger.info(f"User {user_id} set status {old_status} -> {status}")

        transition = await self._broadcast(user_id, old_status, status, old_message, activity_message)
        if transition.kind == CHANGED:
            settings_row = await self._settings_row(user_id)
            show_message = settings_row is None or settings_row.show_activity_to_friends
            await self.activity.record(
                user_id,
                ActivityType.STATUS_CHANGED,
                {"status": status, "activity_message": activity_message if show_message else None},
                audience=transition.audience,
            )
        return True

    # Registry signals

    async def on_user_reachable(self, user_id: int) -> None:
        if not self._enabled() or not self.registry.is_reachable(user_id):
            return
        row = await self._load(user_id)
        preferred = row.preferred_status if row else ONLINE
        new_status = preferred if preferred in HIDDEN_PREFERENCES else ONLINE
        old_status = row.status if row else OFFLINE
        message = row.activity_message if row else None

        await self._save(
            user_id,
            status=new_status,
            socket_count=self.registry.connection_count_for(user_id),
            last_seen=utcnow()
        )
        self.auto_away.discard(user_id)
        if old_status != new_status:
            logger.info(f"User {user_id} reachable: {old_status} -> {new_status}")
            await self._broadcast(user_id, old_status, new_status, message, message)

    async def on_user_unreachable(self, user_id: int) -> None:
        if not self._enabled() or self.registry.is_reachable(user_id):
            return
        row = await self._load(user_id)
        old_status = row.status if row else OFFLINE
        message = row.activity_message if row else None

        await self._save(user_id, status=OFFLINE, socket_count=0, last_seen=utcnow())
        self.auto_away.discard(user_id)
        if old_status != OFFLINE:
            logger.info(f"User {user_id} unreachable: {old_status} -> offline")
            await self._broadcast(user_id, old_status, OFFLINE, message, message)

    async def on_connection_count_changed(self, user_id: int, count: int) -> None:
        if self._enabled():
            await self._save(user_id, socket_count=count)

    async def on_user_active(self, user_id: int) -> None:
        if user_id not in self.auto_away:
            return
        self.auto_away.discard(user_id)
        row = await self._load(user_id)
        if row is None or row.status != AWAY or not self.registry.is_reachable(user_id):
            return
        await self._save(user_id, status=ONLINE)
        logger.info(f"User {user_id} back from auto-away")
        await self._broadcast(user_id, AWAY, ONLINE, row.activity_message, row.activity_message)

    # Reads

    async def get_presence(self, user_id: int) -> PresenceOut:
        """The user's own, unmasked state"""
        row = await self._load(user_id) if self.capabilities.has(PRESENCE_TABLE) else None
        return PresenceOut(
            user_id=user_id,
            status=row.status if row else OFFLINE,
            activity_message=row.activity_message if row else None,
            last_seen=row.last_seen if row else None,
            socket_count=self.registry.connection_count_for(user_id),
            is_online=self.registry.is_reachable(user_id),
        )

    async def get_friends_presence(self, user_id: int) -> List[FriendPresence]:
        """Friends as ``user_id`` may see them, online first then by name"""
        friend_ids = await self.graph.audience_for(user_id)
        if not friend_ids:
            return []
        async with self.session_factory() as db:
            users = await UserRepository(db).get_many(friend_ids)
        masked = await self.masked_presence(user_id, friend_ids)

        friends = []
        for friend_id in friend_ids:
            user = users.get(friend_id)
            if user is None:
                continue
            friends.append(FriendPresence(
                user_id=friend_id,
                username=user.username,
                full_name=user.full_name,
                avatar_url=user.avatar_url,
                **masked[friend_id]
            ))
        friends.sort(key=lambda f: (STATUS_ORDER.get(f.status, len(STATUS_ORDER)), (f.full_name or f.username).lower()))
        return friends

    async def masked_presence(self, viewer_id: int, user_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        ids = list(dict.fromkeys(user_ids))
        rows: Dict[int, UserPresence] = {}
        settings_rows: Dict[int, UserPresenceSettings] = {}
        async with self.session_factory() as db:
            repo = PresenceRepository(db)
            if self.capabilities.has(PRESENCE_TABLE):
                rows = await repo.get_many(ids)
            if self.capabilities.has(SETTINGS_TABLE):
                settings_rows = await repo.get_settings_many(ids)

        masked = {}
        for user_id in ids:
            status, message, last_seen = self.mask(viewer_id, rows.get(user_id), settings_rows.get(user_id))
            masked[user_id] = {
                "status": status,
                "activity_message": message,
                "last_seen": last_seen,
                "is_online": status != OFFLINE and self.registry.is_reachable(user_id),
            }
        return masked

    @staticmethod
    def mask(viewer_id: int, row: Optional[UserPresence], settings_row: Optional[UserPresenceSettings]):
        """(status, activity_message, last_seen) of ``row`` as ``viewer_id`` sees it"""
        if row is None or row.status == INVISIBLE:
            return OFFLINE, None, None
        if settings_row is not None:
            mode = settings_row.privacy_mode
            if mode == PrivacyMode.NOBODY.value:
                return OFFLINE, None, None
            if mode == PrivacyMode.SELECTED.value and viewer_id not in (settings_row.allowed_contacts or []):
                return OFFLINE, None, None
        show_message = settings_row is None or settings_row.show_activity_to_friends
        message = row.activity_message if show_message and row.status != OFFLINE else None
        return row.status, message, row.last_seen

    # Settings

    async def get_settings(self, user_id: int) -> PresenceSettingsOut:
        if not self.capabilities.has(SETTINGS_TABLE):
            return PresenceSettingsOut()
        row = await self._settings_row(user_id)
        return PresenceSettingsOut.model_validate(row) if row else PresenceSettingsOut()

    async def update_settings(self, user_id: int, update: PresenceSettingsUpdate) -> PresenceSettingsOut:
        if not self.capabilities.has(SETTINGS_TABLE):
            self.schema_warning.warn("presence settings", SETTINGS_TABLE)
            return PresenceSettingsOut()
        values = update.model_dump(exclude_none=True, mode="json")
        if "allowed_contacts" in values:
            values["allowed_contacts"] = [c for c in dict.fromkeys(values["allowed_contacts"]) if c != user_id]
        async with self.session_factory() as db:
            row = await PresenceRepository(db).save_settings(user_id, values)
            await db.commit()
            return PresenceSettingsOut.model_validate(row)

    # Periodic maintenance

    async def reconcile(self) -> int:
        """Correct stored presence that disagrees with the live registry"""
        if not self._enabled():
            return 0
        async with self.session_factory() as db:
            rows = await PresenceRepository(db).list_possibly_live(self.settings.PRESENCE_RECONCILE_LIMIT)

        fixed = 0
        seen = set()
        for row in rows:
            seen.add(row.user_id)
            live = self.registry.connection_count_for(row.user_id)
            if live == 0:
                if row.status != OFFLINE or row.socket_count:
                    await self.on_user_unreachable(row.user_id)
                    fixed += 1
            # A live user whose offline row has a matching count chose offline this session
            elif row.socket_count != live:
                if row.status == OFFLINE and row.preferred_status not in HIDDEN_PREFERENCES:
                    await self.on_user_reachable(row.user_id)
                else:
                    await self.on_connection_count_changed(row.user_id, live)
                fixed += 1

        # Connected users whose row still says offline and idle
        unseen = [user_id for user_id in self.registry.reachable_user_ids() if user_id not in seen]
        if unseen:
            async with self.session_factory() as db:
                stored = await PresenceRepository(db).get_many(unseen)
            for user_id in unseen:
                row = stored.get(user_id)
                if row is None or (row.status == OFFLINE and row.preferred_status not in HIDDEN_PREFERENCES):
                    await self.on_user_reachable(user_id)
                    fixed += 1
                elif row.socket_count != self.registry.connection_count_for(user_id):
                    await self.on_connection_count_changed(user_id, self.registry.connection_count_for(user_id))
                    fixed += 1

        if fixed:
            logger.info(f"Presence reconciliation corrected {fixed} users")
        self.throttle.prune()
        return fixed

    async def sweep_auto_away(self) -> int:
        """Move online users idle past their auto-away threshold to away"""
        if not self._enabled():
            return 0
        reachable = self.registry.reachable_user_ids()
        if not reachable:
            return 0
        async with self.session_factory() as db:
            repo = PresenceRepository(db)
            rows = await repo.get_many(reachable)
            settings_rows = await repo.get_settings_many(reachable) if self.capabilities.has(SETTINGS_TABLE) else {}

        moved = 0
        for user_id, row in rows.items():
            if row.status != ONLINE:
                continue
            settings_row = settings_rows.get(user_id)
            if settings_row is not None and not settings_row.auto_away_enabled:
                continue
            minutes = settings_row.auto_away_minutes if settings_row is not None else 5
            idle = self.registry.idle_seconds_for(user_id)
            if idle is None or idle < minutes * 60:
                continue
            await self._save(user_id, status=AWAY)
            self.auto_away.add(user_id)
            logger.info(f"User {user_id} idle for {int(idle)}s, marked away")
            await self._broadcast(user_id, ONLINE, AWAY, row.activity_message, row.activity_message)
            moved += 1
        return moved

    # Internals

    async def _load(self, user_id: int) -> Optional[UserPresence]:
        async with self.session_factory() as db:
            return await PresenceRepository(db).get(user_id)

    async def _save(self, user_id: int, **values: Any) -> None:
        async with self.session_factory() as db:
            await PresenceRepository(db).upsert(user_id, **values)
            await db.commit()

    async def _settings_row(self, user_id: int) -> Optional[UserPresenceSettings]:
        if not self.capabilities.has(SETTINGS_TABLE):
            return None
        async with self.session_factory() as db:
            return await PresenceRepository(db).get_settings(user_id)

    async def _audience(self, user_id: int, settings_row: Optional[UserPresenceSettings]) -> List[int]:
        """Friends allowed to receive this user's presence"""
        if settings_row is not None and settings_row.privacy_mode == PrivacyMode.NOBODY.value:
            return []
        audience = await self.graph.audience_for(user_id)
        if settings_row is not None and settings_row.privacy_mode == PrivacyMode.SELECTED.value:
            allowed = set(settings_row.allowed_contacts or [])
            audience = [friend_id for friend_id in audience if friend_id in allowed]
        return audience

    async def _broadcast(
        self,
        user_id: int,
        old_status: str,
        new_status: str,
        old_message: Optional[str],
        new_message: Optional[str],
    ) -> Transition:
        settings_row = await self._settings_row(user_id)
        show_message = settings_row is None or settings_row.show_activity_to_friends
        old_visible = visible_status(old_status)
        new_visible = visible_status(new_status)
        old_seen = old_message if show_message and old_visible != OFFLINE else None
        new_seen = new_message if show_message and new_visible != OFFLINE else None
        if old_visible == new_visible and old_seen == new_seen:
            return Transition()

        if old_visible == OFFLINE:
            kind = CAME_ONLINE
        elif new_visible == OFFLINE:
            kind = WENT_OFFLINE
        else:
            kind = CHANGED

        audience = await self._audience(user_id, settings_row)
        if not audience:
            return Transition(kind=kind)

        data = {
            "user_id": user_id,
            "status": new_visible,
            "activity_message": new_seen,
            "last_seen": isoformat(utcnow()),
        }
        sent = await self._fan_out(audience, ["friend:presence:update"] + TRANSITION_EVENTS[kind], data)
        logger.info(f"Presence of user {user_id} ({new_visible}) sent to {sent} of {len(audience)} friends")

        if kind in (CAME_ONLINE, WENT_OFFLINE):
            async with self.session_factory() as db:
                user = await UserRepository(db).get_by_id(user_id)
            if user is not None:
                if kind == CAME_ONLINE:
                    await self.dispatcher.notify_many(audience, friend_online_notification(user))
                    await self.activity.record(user_id, ActivityType.CAME_ONLINE, audience=audience)
                else:
                    await self.dispatcher.notify_many(audience, friend_offline_notification(user))
                    await self.activity.record(user_id, ActivityType.WENT_OFFLINE, audience=audience)
        return Transition(kind=kind, audience=audience)

    async def _fan_out(self, audience: List[int], events: List[str], data: Dict[str, Any]) -> int:
        """Emit each event to every reachable audience member, in batches"""
        size = max(1, self.settings.PRESENCE_BATCH_SIZE)
        reachable = [user_id for user_id in audience if self.registry.is_reachable(user_id)]
        batches = [reachable[i:i + size] for i in range(0, len(reachable), size)]
        for index, batch in enumerate(batches):
            for event in events:
                await asyncio.gather(
                    *(self.registry.emit_to_user(friend_id, event, data) for friend_id in batch),
                    return_exceptions=True
                )
            if index < len(batches) - 1:
                await asyncio.sleep(self.settings.PRESENCE_BATCH_PAUSE_SECONDS)
        return len(reachable)

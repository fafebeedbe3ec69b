"""Friend activity feed: bulk rows per audience member plus a live nudge."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings
from app.core.database import SchemaCapabilities
from app.models.activity import FriendActivity
from app.repositories.activity import ActivityRepository
from app.repositories.friendship import FriendshipRepository
from app.repositories.user import UserRepository
from app.schemas.activity import (
    ActivityOut, ActivityPage, ActivityType, format_activity_message, validate_payload
)
from app.schemas.friendship import UserSummary
from app.services.connections import ConnectionRegistry
from app.services.friend_graph import FriendGraph
from app.utils.throttle import MemoryThrottle, SchemaWarning
from app.utils.time import isoformat, utcnow

logger = logging.getLogger(__name__)

FEED_TABLE = "friend_activity_feed"


class ActivityFeedAggregator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ConnectionRegistry,
        graph: FriendGraph,
        settings: Settings,
        capabilities: SchemaCapabilities,
        throttle=None,
        schema_warning: Optional[SchemaWarning] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.graph = graph
        self.settings = settings
        self.capabilities = capabilities
        self.throttle = throttle if throttle is not None else MemoryThrottle(settings.ACTIVITY_THROTTLE_SECONDS)
        self.schema_warning = schema_warning or SchemaWarning(settings.SCHEMA_WARNING_INTERVAL_SECONDS)

    def _enabled(self) -> bool:
        if self.capabilities.has(FEED_TABLE):
            return True
        self.schema_warning.warn("activity feed", FEED_TABLE)
        return False

    async def record(
        self,
        actor_id: int,
        activity_type: str,
        payload: Any = None,
        audience: Optional[Iterable[int]] = None,
    ) -> bool:
        """Write one feed row per audience member and push ``activity:new``.

        Returns False when the type or payload is invalid, the actor is inside
        the throttle window for this type, nobody can see the activity, or
        the write failed.
        """
        try:
            activity_type = ActivityType(activity_type)
            data = validate_payload(activity_type, payload)
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Rejected activity {activity_type!r} from user {actor_id}: {e}")
            return False
        if not self._enabled():
            return False

        if not await self.throttle.acquire((actor_id, activity_type.value)):
            logger.debug(f"Activity {activity_type.value} from user {actor_id} throttled")
            return False

        if audience is None:
            recipients = await self.graph.audience_for(actor_id)
        else:
            recipients = await self.graph.interacting_subset(actor_id, audience)
        if not recipients:
            return False

        try:
            async with self.session_factory() as db:
                actor = await UserRepository(db).get_by_id(actor_id)
                if actor is None:
                    return False
                rows = await ActivityRepository(db).create_many(actor_id, activity_type.value, data, recipients)
                await db.commit()
                actor_summary = UserSummary.model_validate(actor).model_dump()
                actor_name = actor.display_name
        except Exception as e:
            logger.warning(f"Could not record {activity_type.value} for user {actor_id}: {e}")
            return False

        message = format_activity_message(actor_name, activity_type.value, data)
        await self._fan_out(rows, actor_summary, message)
        logger.info(f"Recorded {activity_type.value} from user {actor_id} for {len(rows)} friends")
        return True

    async def _fan_out(self, rows: List[FriendActivity], actor: dict, message: str) -> int:
        size = max(1, self.settings.ACTIVITY_BATCH_SIZE)
        batches = [rows[i:i + size] for i in range(0, len(rows), size)]
        sent = 0
        for index, batch in enumerate(batches):
            results = await asyncio.gather(
                *(
                    self.registry.emit_to_user(row.user_id, "activity:new", {
                        "id": row.id,
                        "actor": actor,
                        "activity_type": row.activity_type,
                        "activity_data": row.activity_data,
                        "formatted_message": message,
                        "created_at": isoformat(row.created_at),
                    })
                    for row in batch
                ),
                return_exceptions=True
            )
            for row, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.warning(f"activity:new to user {row.user_id} failed: {result}")
                else:
                    sent += result
            if index < len(batches) - 1:
                await asyncio.sleep(self.settings.ACTIVITY_BATCH_PAUSE_SECONDS)
        return sent

    async def feed(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        activity_type: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> ActivityPage:
        """Newest first, without hidden rows or actors on either side of a block"""
        if not self._enabled():
            return ActivityPage(activities=[], limit=limit, offset=offset, has_more=False)
        if activity_type is not None:
            activity_type = ActivityType(activity_type).value

        # Fetch one extra row to learn whether another page exists
        async with self.session_factory() as db:
            excluded = await FriendshipRepository(db).blocked_relations(user_id)
            rows = await ActivityRepository(db).feed(
                user_id, limit + 1, offset, activity_type, since, excluded
            )

        activities = []
        for row in rows[:limit]:
            entry = ActivityOut.model_validate(row)
            actor_name = row.actor.display_name if row.actor else "Someone"
            entry.formatted_message = format_activity_message(actor_name, row.activity_type, row.activity_data)
            activities.append(entry)
        return ActivityPage(activities=activities, limit=limit, offset=offset, has_more=len(rows) > limit)

    async def hide(self, user_id: int, activity_id: int) -> bool:
        """Soft-delete an entry; only its recipient can"""
        if not self._enabled():
            return False
        async with self.session_factory() as db:
            hidden = await ActivityRepository(db).hide(user_id, activity_id)
            await db.commit()
        if hidden:
            await self.registry.emit_to_user(user_id, "activity:hidden", {"activity_id": activity_id})
        return hidden

    async def sweep(self) -> int:
        """Delete entries past the retention window and prune the throttle"""
        self.throttle.prune()
        if not self._enabled():
            return 0
        cutoff = utcnow() - timedelta(days=self.settings.ACTIVITY_MAX_AGE_DAYS)
        async with self.session_factory() as db:
            deleted = await ActivityRepository(db).delete_older_than(cutoff)
            await db.commit()
        if deleted:
            logger.info(f"Swept {deleted} activity entries older than {self.settings.ACTIVITY_MAX_AGE_DAYS} days")
        return deleted

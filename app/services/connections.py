"""Connection registry: which user is reachable on which connections.

All bookkeeping happens synchronously before the first ``await`` of each
operation so concurrent connects and disconnects never observe a half
updated map. Persistence of the ``socket_sessions`` mirror is best effort.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings
from app.core.database import SchemaCapabilities
from app.repositories.session import SocketSessionRepository
from app.utils.throttle import MemoryThrottle, SchemaWarning

logger = logging.getLogger(__name__)

CONNECTION_LIMIT_EXCEEDED = "CONNECTION_LIMIT_EXCEEDED"
USER_CONNECTION_LIMIT_EXCEEDED = "USER_CONNECTION_LIMIT_EXCEEDED"


@dataclass
class ConnectionInfo:
    connection_id: str
    user_id: Optional[int]
    connected_at: float
    last_activity: float
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


class ConnectionListener:
    """Signals emitted by the registry. Subclasses override what they need."""

    async def on_user_reachable(self, user_id: int) -> None:
        pass

    async def on_user_unreachable(self, user_id: int) -> None:
        pass

    async def on_connection_count_changed(self, user_id: int, count: int) -> None:
        pass

    async def on_user_active(self, user_id: int) -> None:
        pass


class ConnectionRegistry:
    def __init__(
        self,
        transport,
        session_factory: async_sessionmaker,
        settings: Settings,
        capabilities: SchemaCapabilities,
        schema_warning: Optional[SchemaWarning] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.session_factory = session_factory
        self.settings = settings
        self.capabilities = capabilities
        self.schema_warning = schema_warning or SchemaWarning(settings.SCHEMA_WARNING_INTERVAL_SECONDS)
        self.clock = clock

        self.connections: Dict[str, ConnectionInfo] = {}
        self.user_connections: Dict[int, Set[str]] = {}
        self.listeners: List[ConnectionListener] = []
        self._activity_sync = MemoryThrottle(settings.ACTIVITY_SYNC_INTERVAL_SECONDS, clock=clock)
        self.rejected_total = 0

    def add_listener(self, listener: ConnectionListener) -> None:
        self.listeners.append(listener)

    # Admission

    def admission_error(self, user_id: Optional[int]) -> Optional[str]:
        """Error code a new connection for ``user_id`` would be rejected with"""
        if len(self.connections) >= self.settings.MAX_TOTAL_CONNECTIONS:
            return CONNECTION_LIMIT_EXCEEDED
        if user_id is not None and self.connection_count_for(user_id) >= self.settings.MAX_CONNECTIONS_PER_USER:
            return USER_CONNECTION_LIMIT_EXCEEDED
        return None

    async def add_connection(
        self,
        connection_id: str,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Register a live connection; False means the caller must close it"""
        if connection_id in self.connections:
            return True
        error = self.admission_error(user_id)
        if error:
            self.rejected_total += 1
            logger.warning(f"Rejected connection {connection_id} for user {user_id}: {error}")
            return False

        now = self.clock()
        info = ConnectionInfo(
            connection_id=connection_id,
            user_id=user_id,
            connected_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.connections[connection_id] = info
        first = False
        count = 0
        if user_id is not None:
            user_set = self.user_connections.setdefault(user_id, set())
            first = not user_set
            user_set.add(connection_id)
            count = len(user_set)

        logger.info(
            f"Connection {connection_id} added for user {user_id} "
            f"({count} for user, {len(self.connections)} total)"
        )
        if user_id is None:
            return True

        await self._persist_session(info)
        await self._signal("on_connection_count_changed", user_id, count)
        if first:
            await self._signal("on_user_reachable", user_id)
        return True

    async def remove_connection(self, connection_id: str) -> bool:
        """Forget a connection; unknown ids are ignored"""
        info = self.connections.pop(connection_id, None)
        if info is None:
            return False

        user_id = info.user_id
        last = False
        count = 0
        if user_id is not None:
            user_set = self.user_connections.get(user_id, set())
            user_set.discard(connection_id)
            count = len(user_set)
            if not user_set:
                self.user_connections.pop(user_id, None)
                last = True

        logger.info(f"Connection {connection_id} removed for user {user_id} ({count} left for user)")
        if user_id is None:
            return True

        await self._deactivate_session(connection_id)
        await self._signal("on_connection_count_changed", user_id, count)
        if last:
            await self._signal("on_user_unreachable", user_id)
        return True

    async def touch(self, connection_id: str) -> bool:
        info = self.connections.get(connection_id)
        if info is None:
            return False
        info.last_activity = self.clock()
        if info.user_id is None:
            return True

        if await self._activity_sync.acquire(info.user_id):
            await self._touch_session(connection_id)
        await self._signal("on_user_active", info.user_id)
        return True

    # Lookups

    def get_connections_for(self, user_id: int) -> Set[str]:
        return set(self.user_connections.get(user_id, ()))

    def is_reachable(self, user_id: int) -> bool:
        return bool(self.user_connections.get(user_id))

    def connection_count_for(self, user_id: int) -> int:
        return len(self.user_connections.get(user_id, ()))

    def reachable_user_count(self) -> int:
        return len(self.user_connections)

    def reachable_user_ids(self) -> List[int]:
        return list(self.user_connections)

    def last_activity_for(self, user_id: int) -> Optional[float]:
        stamps = [
            self.connections[cid].last_activity
            for cid in self.user_connections.get(user_id, ())
            if cid in self.connections
        ]
        return max(stamps) if stamps else None

    def idle_seconds_for(self, user_id: int) -> Optional[float]:
        last = self.last_activity_for(user_id)
        return None if last is None else self.clock() - last

    def stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self.connections),
            "reachable_users": len(self.user_connections),
            "anonymous_connections": sum(1 for info in self.connections.values() if info.user_id is None),
            "rejected_total": self.rejected_total,
            "max_total_connections": self.settings.MAX_TOTAL_CONNECTIONS,
            "max_connections_per_user": self.settings.MAX_CONNECTIONS_PER_USER,
        }

    # Delivery

    async def emit_to_user(self, user_id: int, event: str, data: Any = None) -> int:
        """Emit to every live connection of a user, returning the send count"""
        connection_ids = self.get_connections_for(user_id)
        if not connection_ids:
            return 0
        results = await asyncio.gather(
            *(self.transport.emit(cid, event, data) for cid in connection_ids),
            return_exceptions=True
        )
        sent = 0
        for cid, result in zip(connection_ids, results):
            if isinstance(result, Exception):
                logger.warning(f"Emit {event} to connection {cid} failed: {result}")
            elif result:
                sent += 1
        return sent

    # Maintenance

    async def sweep_idle(self) -> int:
        """Evict connections idle past the timeout as if they disconnected"""
        now = self.clock()
        timeout = self.settings.CONNECTION_TIMEOUT_SECONDS
        stale = [
            cid for cid, info in self.connections.items()
            if now - info.last_activity > timeout
        ]
        for cid in stale:
            await self.remove_connection(cid)
            await self.transport.close(cid, code=4000, reason="Idle timeout")
        if stale:
            logger.info(f"Evicted {len(stale)} idle connections")
        self._activity_sync.prune()
        return len(stale)

    async def reset_persisted_sessions(self) -> int:
        """Mark every persisted session inactive at process start"""
        if not self._sessions_enabled():
            return 0
        try:
            async with self.session_factory() as db:
                count = await SocketSessionRepository(db).deactivate_all()
                await db.commit()
            if count:
                logger.info(f"Marked {count} stale socket sessions inactive")
            return count
        except Exception as e:
            logger.warning(f"Could not reset socket sessions: {e}")
            return 0

    # Internals

    def _sessions_enabled(self) -> bool:
        if self.capabilities.has("socket_sessions"):
            return True
        self.schema_warning.warn("socket session tracking", "socket_sessions")
        return False

    async def _persist_session(self, info: ConnectionInfo) -> None:
        if not self._sessions_enabled():
            return
        try:
            async with self.session_factory() as db:
                await SocketSessionRepository(db).create(
                    info.user_id, info.connection_id, info.ip_address, info.user_agent
                )
                await db.commit()
        except Exception as e:
            logger.warning(f"Could not persist session {info.connection_id}: {e}")

    async def _deactivate_session(self, connection_id: str) -> None:
        if not self._sessions_enabled():
            return
        try:
            async with self.session_factory() as db:
                await SocketSessionRepository(db).deactivate(connection_id)
                await db.commit()
        except Exception as e:
            logger.warning(f"Could not deactivate session {connection_id}: {e}")

    async def _touch_session(self, connection_id: str) -> None:
        if not self._sessions_enabled():
            return
        try:
            async with self.session_factory() as db:
                await SocketSessionRepository(db).touch(connection_id)
                await db.commit()
        except Exception as e:
            logger.warning(f"Could not sync activity for session {connection_id}: {e}")

    async def _signal(self, name: str, *args) -> None:
        for listener in self.listeners:
            try:
                await getattr(listener, name)(*args)
            except Exception:
                logger.exception(f"Connection listener {type(listener).__name__}.{name} failed")

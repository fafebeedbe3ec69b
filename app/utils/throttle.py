"""Time-window throttles and rate-limited warnings.

Every component that suppresses repeated operations holds its own throttle
instance, so tests can build isolated components with a fake clock. The
in-memory variant is correct for a single process; ``RedisThrottle`` keeps
the same window in Redis so several processes share it.
"""

import logging
import time
from typing import Callable, Dict, Hashable, Optional

from app.core.config import Settings
from app.core.redis import RedisClient

logger = logging.getLogger(__name__)


class MemoryThrottle:
    """Per-key time window kept in a dict.

    ``acquire`` checks and stamps the key without awaiting anything, which
    makes it atomic under a single event loop.
    """

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.window = window_seconds
        self.clock = clock
        self._last: Dict[Hashable, float] = {}

    def _throttled(self, key: Hashable) -> bool:
        if self.window <= 0:
            return False
        last = self._last.get(key)
        if last is None:
            return False
        return self.clock() - last < self.window

    async def is_throttled(self, key: Hashable) -> bool:
        return self._throttled(key)

    async def touch(self, key: Hashable) -> None:
        self._last[key] = self.clock()

    async def acquire(self, key: Hashable) -> bool:
        if self._throttled(key):
            return False
        self._last[key] = self.clock()
        return True

    async def reset(self, key: Hashable) -> None:
        self._last.pop(key, None)

    def prune(self, max_age: Optional[float] = None) -> int:
        """Forget keys older than ``max_age`` (ten windows by default)"""
        max_age = max_age if max_age is not None else self.window * 10
        now = self.clock()
        stale = [key for key, stamp in self._last.items() if now - stamp > max_age]
        for key in stale:
            del self._last[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last)


class RedisThrottle:
    """Same contract as ``MemoryThrottle`` backed by expiring Redis keys"""

    def __init__(self, client: RedisClient, namespace: str, window_seconds: float):
        self.client = client
        self.namespace = namespace
        self.window = window_seconds

    def _key(self, key: Hashable) -> str:
        if isinstance(key, tuple):
            key = ":".join(str(part) for part in key)
        return f"throttle:{self.namespace}:{key}"

    @property
    def _window_ms(self) -> int:
        return max(1, int(self.window * 1000))

    async def is_throttled(self, key: Hashable) -> bool:
        if self.window <= 0:
            return False
        return await self.client.exists(self._key(key))

    async def touch(self, key: Hashable) -> None:
        if self.window <= 0:
            return
        await self.client.set(self._key(key), "1", expire_ms=self._window_ms)

    async def acquire(self, key: Hashable) -> bool:
        if self.window <= 0:
            return True
        return await self.client.set_if_absent(self._key(key), "1", expire_ms=self._window_ms)

    async def reset(self, key: Hashable) -> None:
        await self.client.delete(self._key(key))

    def prune(self, max_age: Optional[float] = None) -> int:
        # Redis expires the keys on its own
        return 0


def build_throttle(
    namespace: str,
    window_seconds: float,
    settings: Settings,
    redis_client: Optional[RedisClient] = None,
    clock: Callable[[], float] = time.monotonic,
):
    """Pick the throttle backend configured by ``THROTTLE_BACKEND``"""
    if settings.THROTTLE_BACKEND == "redis":
        if redis_client is not None and redis_client.connected:
            return RedisThrottle(redis_client, namespace, window_seconds)
        logger.warning(f"Redis throttle requested for {namespace} but Redis is not connected, using memory")
    return MemoryThrottle(window_seconds, clock=clock)


class SchemaWarning:
    """Log that a feature is disabled at most once per interval"""

    def __init__(self, interval_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.interval = interval_seconds
        self.clock = clock
        self._last: Dict[str, float] = {}

    def warn(self, feature: str, table: str) -> bool:
        now = self.clock()
        last = self._last.get(table)
        if last is not None and now - last < self.interval:
            return False
        self._last[table] = now
        logger.warning(f"Skipping {feature}: table '{table}' is not initialized")
        return True

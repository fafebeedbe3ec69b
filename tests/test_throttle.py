# tests/test_throttle.py
import pytest

from app.core.redis import RedisClient
from app.utils.throttle import MemoryThrottle, RedisThrottle, SchemaWarning, build_throttle
from tests.conftest import FakeClock, make_settings


@pytest.mark.asyncio
async def test_acquire_stamps_and_blocks_inside_window() -> None:
    clock = FakeClock()
    throttle = MemoryThrottle(5, clock=clock)

    assert await throttle.acquire("alice")
    assert not await throttle.acquire("alice")
    assert await throttle.is_throttled("alice")
    assert await throttle.acquire("bob")

    clock.advance(5)
    assert not await throttle.is_throttled("alice")
    assert await throttle.acquire("alice")


@pytest.mark.asyncio
async def test_zero_window_never_throttles() -> None:
    throttle = MemoryThrottle(0, clock=FakeClock())
    await throttle.touch(1)
    assert not await throttle.is_throttled(1)
    assert await throttle.acquire(1)


@pytest.mark.asyncio
async def test_prune_forgets_old_keys() -> None:
    clock = FakeClock()
    throttle = MemoryThrottle(1, clock=clock)
    await throttle.touch((1, "came_online"))
    clock.advance(5)
    await throttle.touch((2, "came_online"))
    clock.advance(6)

    assert throttle.prune() == 1
    assert len(throttle) == 1


def test_redis_backend_falls_back_to_memory_without_connection() -> None:
    throttle = build_throttle("presence", 5, make_settings(THROTTLE_BACKEND="redis"), redis_client=None)
    assert isinstance(throttle, MemoryThrottle)


def test_schema_warning_is_rate_limited() -> None:
    clock = FakeClock()
    warning = SchemaWarning(3600, clock=clock)

    assert warning.warn("presence tracking", "user_presence")
    assert not warning.warn("presence tracking", "user_presence")
    assert warning.warn("activity feed", "friend_activity_feed")
    clock.advance(3600)
    assert warning.warn("presence tracking", "user_presence")


class InMemoryRedis:
    """Just enough of ``redis.asyncio.Redis`` for the throttle keys; expiry is ignored"""

    def __init__(self):
        self.store = {}
        self.expiries = {}

    async def set(self, key, value, px=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expiries[key] = px
        return True

    async def exists(self, key):
        return int(key in self.store)

    async def delete(self, key):
        return int(self.store.pop(key, None) is not None)


def connected_client() -> RedisClient:
    client = RedisClient("redis://unused")
    client.redis = InMemoryRedis()
    return client


@pytest.mark.asyncio
async def test_redis_throttle_uses_expiring_keys() -> None:
    client = connected_client()
    throttle = build_throttle("presence", 2.5, make_settings(THROTTLE_BACKEND="redis"), redis_client=client)
    assert isinstance(throttle, RedisThrottle)

    assert await throttle.acquire((7, "came_online"))
    assert not await throttle.acquire((7, "came_online"))
    assert client.redis.expiries["throttle:presence:7:came_online"] == 2500
    assert await throttle.is_throttled((7, "came_online"))

    await throttle.reset((7, "came_online"))
    assert not await throttle.is_throttled((7, "came_online"))


@pytest.mark.asyncio
async def test_redis_throttle_zero_window_is_a_no_op() -> None:
    client = connected_client()
    throttle = RedisThrottle(client, "activity", 0)

    await throttle.touch(1)
    assert client.redis.store == {}
    assert await throttle.acquire(1)
    assert await throttle.acquire(1)


@pytest.mark.asyncio
async def test_hub_components_keep_their_injected_throttles(make_hub, clock, users) -> None:
    hub = make_hub(
        PRESENCE_UPDATE_THROTTLE_SECONDS=5, NOTIFICATION_THROTTLE_SECONDS=1, ACTIVITY_THROTTLE_SECONDS=2
    )

    for throttle, window in ((hub.presence.throttle, 5), (hub.dispatcher.throttle, 1), (hub.activity.throttle, 2)):
        assert isinstance(throttle, MemoryThrottle)
        assert len(throttle) == 0
        assert throttle.clock is clock
        assert throttle.window == window

    await hub.presence.throttle.touch(users["alice"].id)
    assert await hub.presence.throttle.is_throttled(users["alice"].id)
    clock.advance(5)
    assert not await hub.presence.throttle.is_throttled(users["alice"].id)

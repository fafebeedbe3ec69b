# tests/test_presence.py
import pytest

from app.models.presence import UserPresence
from app.repositories.presence import PresenceRepository
from app.schemas.presence import PresenceSettingsUpdate
from app.utils.exceptions import ValidationError
from tests.conftest import befriend, block, connect


async def stored(session_factory, user_id) -> UserPresence:
    async with session_factory() as db:
        return await PresenceRepository(db).get(user_id)


@pytest.mark.asyncio
async def test_first_connection_brings_user_online_for_friends(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    bob_conn = await connect(hub, bob)
    transport.clear()

    await connect(hub, alice)

    row = await stored(session_factory, alice.id)
    assert row.status == "online"
    assert row.socket_count == 1
    events = [event for _, event, _ in transport.events(bob_conn)]
    assert "friend:presence:update" in events
    assert "friend:online" in events
    assert "friend:came_online" in events
    update = transport.data(bob_conn, "friend:presence:update")[0]
    assert update["user_id"] == alice.id and update["status"] == "online"


@pytest.mark.asyncio
async def test_second_connection_does_not_rebroadcast(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    bob_conn = await connect(hub, bob)
    await connect(hub, alice)
    transport.clear()

    await connect(hub, alice)

    assert transport.events(bob_conn, "friend:online") == []
    assert (await stored(session_factory, alice.id)).socket_count == 2


@pytest.mark.asyncio
async def test_last_disconnect_goes_offline(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    bob_conn = await connect(hub, bob)
    alice_conn = await connect(hub, alice)
    transport.clear()

    await hub.registry.remove_connection(alice_conn)

    row = await stored(session_factory, alice.id)
    assert row.status == "offline"
    assert row.socket_count == 0
    assert row.last_seen is not None
    assert transport.data(bob_conn, "friend:offline")[0]["user_id"] == alice.id
    assert transport.events(bob_conn, "friend:went_offline")


@pytest.mark.asyncio
async def test_invisible_looks_offline_to_friends(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    bob_conn = await connect(hub, bob)
    await connect(hub, alice)
    transport.clear()

    assert await hub.presence.set_status(alice.id, "invisible")

    update = transport.data(bob_conn, "friend:presence:update")[0]
    assert update["status"] == "offline"
    assert transport.events(bob_conn, "friend:went_offline")

    friends = await hub.presence.get_friends_presence(bob.id)
    assert friends[0].status == "offline"
    assert friends[0].is_online is False
    assert friends[0].last_seen is None

    own = await hub.presence.get_presence(alice.id)
    assert own.status == "invisible"
    assert own.is_online is True


@pytest.mark.asyncio
async def test_invisible_survives_reconnect(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    alice_conn = await connect(hub, alice)
    await hub.presence.set_status(alice.id, "invisible")
    await hub.registry.remove_connection(alice_conn)
    bob_conn = await connect(hub, bob)
    transport.clear()

    await connect(hub, alice)

    assert (await stored(session_factory, alice.id)).status == "invisible"
    assert transport.events(bob_conn, "friend:online") == []


@pytest.mark.asyncio
async def test_offline_choice_is_replaced_by_online_on_reconnect(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    alice_conn = await connect(hub, alice)
    assert await hub.presence.set_status(alice.id, "offline")
    await hub.registry.remove_connection(alice_conn)
    bob_conn = await connect(hub, bob)
    transport.clear()

    await connect(hub, alice)

    assert (await stored(session_factory, alice.id)).status == "online"
    assert transport.data(bob_conn, "friend:online")[0]["user_id"] == alice.id


@pytest.mark.asyncio
async def test_reconcile_keeps_offline_chosen_while_connected(hub, session_factory, users) -> None:
    dave = users["dave"]
    await connect(hub, dave)
    assert await hub.presence.set_status(dave.id, "offline")

    assert await hub.presence.reconcile() == 0
    assert (await stored(session_factory, dave.id)).status == "offline"


@pytest.mark.asyncio
async def test_unchanged_or_invalid_updates_are_ignored(hub, session_factory, users) -> None:
    alice = users["alice"]
    await connect(hub, alice)

    assert not await hub.presence.set_status(alice.id, "online")
    assert not await hub.presence.set_status(alice.id, "sleeping")
    assert not await hub.presence.set_status(alice.id, "busy", "x" * 101)
    assert (await stored(session_factory, alice.id)).status == "online"

    with pytest.raises(ValidationError) as exc:
        hub.presence.validate_update("sleeping")
    assert exc.value.code == "INVALID_STATUS"
    with pytest.raises(ValidationError) as exc:
        hub.presence.validate_update("busy", "x" * 101)
    assert exc.value.code == "MESSAGE_TOO_LONG"


@pytest.mark.asyncio
async def test_rapid_updates_are_throttled(make_hub, clock, session_factory, users) -> None:
    hub = make_hub(PRESENCE_UPDATE_THROTTLE_SECONDS=5)
    alice = users["alice"]
    await connect(hub, alice)

    assert await hub.presence.set_status(alice.id, "busy")
    assert not await hub.presence.set_status(alice.id, "away")
    assert (await stored(session_factory, alice.id)).status == "busy"

    clock.advance(5)
    assert await hub.presence.set_status(alice.id, "away")


@pytest.mark.asyncio
async def test_status_change_records_activity_for_friends(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    bob_conn = await connect(hub, bob)
    await connect(hub, alice)
    transport.clear()

    assert await hub.presence.set_status(alice.id, "busy", "In a meeting")

    changed = transport.data(bob_conn, "friend:status:changed")[0]
    assert changed == {
        "user_id": alice.id,
        "status": "busy",
        "activity_message": "In a meeting",
        "last_seen": changed["last_seen"],
    }
    page = await hub.activity.feed(bob.id)
    types = [entry.activity_type.value for entry in page.activities]
    assert "status_changed" in types


@pytest.mark.asyncio
async def test_privacy_nobody_hides_presence(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await hub.presence.update_settings(alice.id, PresenceSettingsUpdate(privacy_mode="nobody"))
    bob_conn = await connect(hub, bob)
    transport.clear()

    await connect(hub, alice)

    assert transport.events(bob_conn, "friend:online") == []
    masked = await hub.presence.masked_presence(bob.id, [alice.id])
    assert masked[alice.id]["status"] == "offline"
    assert masked[alice.id]["is_online"] is False


@pytest.mark.asyncio
async def test_selected_privacy_only_reaches_allowed_contacts(hub, transport, session_factory, users) -> None:
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    await befriend(session_factory, alice, bob)
    await befriend(session_factory, alice, carol)
    await hub.presence.update_settings(
        alice.id, PresenceSettingsUpdate(privacy_mode="selected", allowed_contacts=[carol.id, alice.id])
    )
    bob_conn = await connect(hub, bob)
    carol_conn = await connect(hub, carol)
    transport.clear()

    await connect(hub, alice)

    assert transport.events(bob_conn, "friend:online") == []
    assert transport.events(carol_conn, "friend:online")
    settings = await hub.presence.get_settings(alice.id)
    assert settings.allowed_contacts == [carol.id]


@pytest.mark.asyncio
async def test_hidden_activity_message(hub, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await connect(hub, alice)
    await hub.presence.set_status(alice.id, "busy", "Deep work")
    await hub.presence.update_settings(alice.id, PresenceSettingsUpdate(show_activity_to_friends=False))

    masked = await hub.presence.masked_presence(bob.id, [alice.id])
    assert masked[alice.id]["status"] == "busy"
    assert masked[alice.id]["activity_message"] is None


@pytest.mark.asyncio
async def test_blocked_friend_gets_no_presence(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await block(session_factory, bob, alice)
    bob_conn = await connect(hub, bob)
    transport.clear()

    await connect(hub, alice)

    assert transport.events(bob_conn) == []


@pytest.mark.asyncio
async def test_reconcile_fixes_drift(hub, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    # Stale row from a previous process
    async with session_factory() as db:
        await PresenceRepository(db).upsert(alice.id, status="online", socket_count=2)
        await db.commit()
    # Connected user whose row never got written
    hub.transport.register("bob-x")
    await hub.registry.add_connection("bob-x", bob.id)
    async with session_factory() as db:
        await PresenceRepository(db).upsert(bob.id, status="offline", socket_count=0)
        await db.commit()

    fixed = await hub.presence.reconcile()

    assert fixed == 2
    assert (await stored(session_factory, alice.id)).status == "offline"
    assert (await stored(session_factory, alice.id)).socket_count == 0
    assert (await stored(session_factory, bob.id)).status == "online"


@pytest.mark.asyncio
async def test_auto_away_and_back(hub, transport, clock, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    bob_conn = await connect(hub, bob)
    alice_conn = await connect(hub, alice)
    clock.advance(5 * 60 + 1)
    await hub.registry.touch(bob_conn)
    transport.clear()

    assert await hub.presence.sweep_auto_away() == 1
    assert (await stored(session_factory, alice.id)).status == "away"
    assert transport.data(bob_conn, "friend:status:changed")[0]["status"] == "away"

    await hub.registry.touch(alice_conn)
    assert (await stored(session_factory, alice.id)).status == "online"


@pytest.mark.asyncio
async def test_auto_away_respects_settings(hub, clock, session_factory, users) -> None:
    alice = users["alice"]
    await hub.presence.update_settings(alice.id, PresenceSettingsUpdate(auto_away_enabled=False))
    await connect(hub, alice)
    clock.advance(3600)

    assert await hub.presence.sweep_auto_away() == 0
    assert (await stored(session_factory, alice.id)).status == "online"

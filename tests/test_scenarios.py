# tests/test_scenarios.py
"""End-to-end flows through the service layer and the realtime hub"""
import pytest
from sqlalchemy import select

from app.models.friendship import FriendRequest, Friendship
from app.models.notification import FriendNotification
from app.schemas.notification import NotificationPreferenceUpdate, friend_message_notification
from app.services.friendship import FriendshipService
from app.utils.exceptions import ValidationError
from tests.conftest import befriend, connect


async def call(session_factory, hub, method, *args):
    async with session_factory() as db:
        return await getattr(FriendshipService(db, hub), method)(*args)


async def rows(session_factory, model, *criteria):
    async with session_factory() as db:
        return list((await db.execute(select(model).where(*criteria))).scalars())


async def request_and_accept(session_factory, hub, sender, receiver) -> int:
    sent = await call(session_factory, hub, "send_request", sender, receiver.id, "hi")
    accepted = await call(session_factory, hub, "accept_request", sent.request.id, receiver)
    return accepted.friendship_id


@pytest.mark.asyncio
async def test_request_shows_up_for_receiver(hub, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]

    await call(session_factory, hub, "send_request", alice, bob.id, "hi")

    page = await call(session_factory, hub, "list_received", bob.id, 20, 0)
    assert page.total_count == 1
    request = page.requests[0]
    assert request.message == "hi"
    assert request.status == "pending"
    assert request.expires_at > request.created_at


@pytest.mark.asyncio
async def test_accept_creates_friendship_and_notifies_both(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    alice_conn = await connect(hub, alice)

    await request_and_accept(session_factory, hub, alice, bob)

    assert len(await rows(session_factory, Friendship)) == 1
    for user in (alice, bob):
        accepted = await rows(
            session_factory, FriendNotification,
            FriendNotification.user_id == user.id, FriendNotification.type == "friend_accepted"
        )
        assert len(accepted) == 1
    pushed = [frame["type"] for frame in transport.data(alice_conn, "notification")]
    assert pushed == ["friend_accepted"]


@pytest.mark.asyncio
async def test_block_dissolves_friendship_and_silences_sender(hub, session_factory, users) -> None:
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    await request_and_accept(session_factory, hub, alice, bob)
    await call(session_factory, hub, "send_request", carol, alice.id, None)

    await call(session_factory, hub, "block_user", alice, bob.id, "spam")
    await call(session_factory, hub, "block_user", alice, carol.id, None)

    assert await rows(session_factory, Friendship) == []
    assert await rows(session_factory, FriendRequest, FriendRequest.status == "pending") == []
    before = len(await rows(session_factory, FriendNotification, FriendNotification.user_id == alice.id))
    assert await hub.dispatcher.notify(alice.id, friend_message_notification(bob, "please")) is False
    after = len(await rows(session_factory, FriendNotification, FriendNotification.user_id == alice.id))
    assert after == before


@pytest.mark.asyncio
async def test_sixth_connection_is_rejected(make_hub, users) -> None:
    hub = make_hub(MAX_CONNECTIONS_PER_USER=5)
    carol = users["carol"]
    for _ in range(5):
        await connect(hub, carol)

    assert not await hub.registry.add_connection("carol-6", carol.id)
    assert hub.registry.connection_count_for(carol.id) == 5
    assert hub.registry.admission_error(carol.id) == "USER_CONNECTION_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_activity_message_length_limit(hub, users) -> None:
    dave = users["dave"]
    await connect(hub, dave)

    hub.presence.validate_update("busy", "m" * 99)
    assert await hub.presence.set_status(dave.id, "busy", "m" * 99)
    presence = await hub.presence.get_presence(dave.id)
    assert (presence.status, presence.activity_message) == ("busy", "m" * 99)

    with pytest.raises(ValidationError) as exc:
        hub.presence.validate_update("busy", "m" * 101)
    assert exc.value.code == "MESSAGE_TOO_LONG"


@pytest.mark.asyncio
async def test_silent_drop_is_corrected_once(hub, transport, clock, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await hub.dispatcher.update_preferences(
        bob.id, [NotificationPreferenceUpdate(notification_type="friend_offline", enabled=True)]
    )
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    transport.clear()

    # alice's socket dies without a close frame; bob keeps talking
    clock.advance(hub.settings.CONNECTION_TIMEOUT_SECONDS + 1)
    await hub.registry.touch(bob_conn)
    assert await hub.registry.sweep_idle() == 1
    await hub.sync_presence()
    await hub.sync_presence()

    assert (await hub.presence.get_presence(alice.id)).status == "offline"
    assert alice_conn in transport.closed
    assert len(transport.data(bob_conn, "friend:went_offline")) == 1
    offline = [frame for frame in transport.data(bob_conn, "notification") if frame["type"] == "friend_offline"]
    assert len(offline) == 1

# tests/test_websocket_events.py
import json

import pytest

from app.api.v1.endpoints.websocket import get_user_from_token, handle_websocket_message
from app.core.security import create_access_token
from app.models.user import User
from tests.conftest import befriend, block, connect


async def send(hub, connection_id, user, frame) -> None:
    raw = frame if isinstance(frame, str) else json.dumps(frame)
    await handle_websocket_message(hub, connection_id, user, raw)


def last_error(transport, connection_id):
    errors = transport.data(connection_id, "error")
    return errors[-1] if errors else None


@pytest.mark.asyncio
async def test_token_resolves_only_active_users(hub, session_factory, users) -> None:
    alice = users["alice"]
    assert (await get_user_from_token(create_access_token(alice.id), hub)).id == alice.id
    assert await get_user_from_token("not-a-token", hub) is None
    assert await get_user_from_token(create_access_token(9999), hub) is None

    async with session_factory() as db:
        user = await db.get(User, alice.id)
        user.is_blocked = True
        await db.commit()
    assert await get_user_from_token(create_access_token(alice.id), hub) is None


@pytest.mark.asyncio
async def test_malformed_frames_get_error_replies(hub, transport, users) -> None:
    alice = users["alice"]
    conn = await connect(hub, alice)

    await send(hub, conn, alice, "{not json")
    assert last_error(transport, conn)["code"] == "INVALID_JSON"

    await send(hub, conn, alice, [1, 2])
    assert last_error(transport, conn)["code"] == "INVALID_FORMAT"

    await send(hub, conn, alice, {"type": "launch:rockets"})
    assert last_error(transport, conn)["code"] == "INVALID_FORMAT"

    await send(hub, conn, alice, {"type": "pong"})
    assert last_error(transport, conn)["code"] == "UNSUPPORTED_TYPE"

    await send(hub, conn, alice, {"type": "presence:update", "data": {}})
    assert last_error(transport, conn)["code"] == "MISSING_FIELDS"


@pytest.mark.asyncio
async def test_ping_and_ack(hub, transport, users) -> None:
    alice = users["alice"]
    conn = await connect(hub, alice)

    await send(hub, conn, alice, {"type": "ping", "data": {"client_time": 42}})
    assert transport.data(conn, "pong") == [{"server_time": 42}]

    await send(hub, conn, alice, {"type": "ack", "ack_id": "a1", "data": {"status": "received"}})
    assert transport.resolved == [("a1", {"status": "received"})]

    await send(hub, conn, alice, {"type": "ack", "data": {}})
    assert last_error(transport, conn)["code"] == "MISSING_FIELDS"


@pytest.mark.asyncio
async def test_presence_update_over_socket(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    transport.clear()

    await send(hub, alice_conn, alice, {"type": "presence:update", "data": {"status": "away", "activity_message": "lunch"}})

    assert transport.data(alice_conn, "presence:self")[-1]["status"] == "away"
    assert transport.data(bob_conn, "friend:presence:update")[-1]["status"] == "away"

    await send(hub, alice_conn, alice, {"type": "presence:update", "data": {"status": "asleep"}})
    assert last_error(transport, alice_conn)["code"] == "INVALID_STATUS"

    await send(hub, bob_conn, bob, {"type": "friends:presence"})
    friends = transport.data(bob_conn, "friends:presence")[-1]["friends"]
    assert [(f["user_id"], f["status"]) for f in friends] == [(alice.id, "away")]


@pytest.mark.asyncio
async def test_friend_message_and_typing(hub, transport, session_factory, users) -> None:
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    await befriend(session_factory, alice, bob)
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    transport.clear()

    await send(hub, alice_conn, alice, {"type": "typing", "data": {"friend_id": bob.id}})
    assert transport.data(bob_conn, "friend:typing") == [{"user_id": alice.id, "is_typing": True}]
    assert (alice.id, bob.id) in hub.typing

    await send(hub, alice_conn, alice, {"type": "friend:message", "data": {"friend_id": bob.id, "message": "  hi bob  "}})
    frame = transport.data(bob_conn, "notification")[-1]
    assert frame["type"] == "friend_message"
    assert frame["data"]["preview"] == "hi bob"
    assert (alice.id, bob.id) not in hub.typing

    await send(hub, alice_conn, alice, {"type": "friend:message", "data": {"friend_id": carol.id, "message": "hi"}})
    assert last_error(transport, alice_conn)["code"] == "NOT_FRIENDS"

    await send(hub, alice_conn, alice, {"type": "friend:message", "data": {"friend_id": bob.id, "message": "   "}})
    assert last_error(transport, alice_conn)["code"] == "EMPTY_MESSAGE"

    await send(hub, alice_conn, alice, {"type": "friend:message", "data": {"friend_id": bob.id, "message": "x" * 2001}})
    assert last_error(transport, alice_conn)["code"] == "MESSAGE_TOO_LONG"

    await send(hub, alice_conn, alice, {"type": "friend:message", "data": {"message": "who?"}})
    assert last_error(transport, alice_conn)["code"] == "INVALID_FORMAT"

    await send(hub, alice_conn, alice, {"type": "typing", "data": {"friend_id": alice.id}})
    assert last_error(transport, alice_conn)["code"] == "SELF_TARGET"


@pytest.mark.asyncio
async def test_blocked_friend_cannot_be_messaged(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await block(session_factory, bob, alice)
    alice_conn = await connect(hub, alice)

    await send(hub, alice_conn, alice, {"type": "friend:message", "data": {"friend_id": bob.id, "message": "hi"}})

    assert last_error(transport, alice_conn)["code"] == "NOT_FRIENDS"


@pytest.mark.asyncio
async def test_notification_read_variants(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    for text in ("one", "two", "three"):
        await hub.relay_message(bob.id, alice.id, text)
    page = await hub.dispatcher.get_notifications(alice.id)
    ids = [n.id for n in page.notifications]
    conn = await connect(hub, alice)

    await send(hub, conn, alice, {"type": "notification:read", "data": {"notification_id": ids[0]}})
    assert await hub.dispatcher.unread_count(alice.id) == 2

    await send(hub, conn, alice, {"type": "notification:read", "data": {"notification_ids": [ids[1]]}})
    assert await hub.dispatcher.unread_count(alice.id) == 1

    await send(hub, conn, alice, {"type": "notification:read", "data": {"notification_ids": ["x"]}})
    assert last_error(transport, conn)["code"] == "INVALID_FORMAT"

    await send(hub, conn, alice, {"type": "notification:read", "data": {"all": True}})
    assert await hub.dispatcher.unread_count(alice.id) == 0

    await send(hub, conn, alice, {"type": "notification:read", "data": {}})
    assert last_error(transport, conn)["code"] == "MISSING_FIELDS"


@pytest.mark.asyncio
async def test_activity_hide_over_socket(hub, transport, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await hub.activity.record(alice.id, "profile_updated", {"fields": ["bio"]})
    entry = (await hub.activity.feed(bob.id)).activities[0]
    conn = await connect(hub, bob)

    await send(hub, conn, bob, {"type": "activity:hide", "data": {"activity_id": entry.id}})

    assert transport.data(conn, "activity:hidden") == [{"activity_id": entry.id}]
    assert (await hub.activity.feed(bob.id)).activities == []

    await send(hub, conn, bob, {"type": "activity:hide", "data": {}})
    assert last_error(transport, conn)["code"] == "MISSING_FIELDS"

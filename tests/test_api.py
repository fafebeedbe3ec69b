# tests/test_api.py
from typing import Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.database import get_db
from app.core.security import create_access_token
from app.main import app
from tests.conftest import befriend, connect


def auth(user) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest_asyncio.fixture
async def client(hub, session_factory):
    async def _get_db_override():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db_override
    app.state.hub = hub
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.state.hub = None


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client, users) -> None:
    res = await client.get("/api/v1/friends")
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Not authenticated", "code": "MISSING_TOKEN"}

    res = await client.get("/api/v1/friends", headers={"Authorization": "Bearer nonsense"})
    assert res.status_code == 401
    assert res.json()["code"] == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_friend_request_lifecycle(client, users) -> None:
    alice, bob = users["alice"], users["bob"]

    res = await client.post("/api/v1/friend-requests", json={"receiver_id": bob.id, "message": "hey"}, headers=auth(alice))
    assert res.status_code == 201
    request_id = res.json()["request"]["id"]

    res = await client.get("/api/v1/friend-requests/received", headers=auth(bob))
    assert res.json()["total_count"] == 1
    assert res.json()["requests"][0]["sender"]["username"] == "alice"
    res = await client.get("/api/v1/friend-requests/sent", headers=auth(alice))
    assert [r["id"] for r in res.json()["requests"]] == [request_id]

    res = await client.put(f"/api/v1/friend-requests/{request_id}/accept", headers=auth(alice))
    assert res.status_code == 403

    res = await client.put(f"/api/v1/friend-requests/{request_id}/accept", headers=auth(bob))
    assert res.status_code == 200
    assert res.json()["friend"]["id"] == alice.id

    res = await client.get("/api/v1/friends", headers=auth(alice))
    body = res.json()
    assert body["total_count"] == 1
    assert body["friends"][0]["username"] == "bob"
    assert body["friends"][0]["status"] == "offline"

    res = await client.delete(f"/api/v1/friends/{bob.id}", headers=auth(alice))
    assert res.json() == {"success": True, "message": "Friend removed successfully"}
    res = await client.delete(f"/api/v1/friends/{bob.id}", headers=auth(alice))
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_request_errors_map_to_status_codes(client, users) -> None:
    alice, bob = users["alice"], users["bob"]

    res = await client.post("/api/v1/friend-requests", json={"receiver_id": bob.id, "message": "x" * 501}, headers=auth(alice))
    assert res.status_code == 400
    assert res.json()["code"] == "MESSAGE_TOO_LONG"

    res = await client.post("/api/v1/friend-requests", json={"receiver_id": 9999}, headers=auth(alice))
    assert res.status_code == 404

    await client.post("/api/v1/friend-requests", json={"receiver_id": bob.id}, headers=auth(alice))
    res = await client.post("/api/v1/friend-requests", json={"receiver_id": bob.id}, headers=auth(alice))
    assert res.status_code == 409
    assert res.json()["code"] == "REQUEST_EXISTS"

    res = await client.delete("/api/v1/friend-requests/9999", headers=auth(alice))
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_blocking_endpoints(client, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)

    res = await client.post("/api/v1/blocked-users", json={"blocked_id": bob.id, "reason": "spam"}, headers=auth(alice))
    assert res.status_code == 201
    assert res.json()["blocked"]["username"] == "bob"

    res = await client.get(f"/api/v1/blocked-users/{alice.id}", headers=auth(bob))
    assert res.json() == {"user_id": alice.id, "blocked_by_me": False, "blocked_me": True, "is_blocked": True}

    res = await client.post("/api/v1/friend-requests", json={"receiver_id": alice.id}, headers=auth(bob))
    assert res.status_code == 403

    res = await client.get("/api/v1/blocked-users", headers=auth(alice))
    assert res.json()["total_count"] == 1
    assert (await client.get("/api/v1/friends", headers=auth(alice))).json()["total_count"] == 0

    res = await client.delete(f"/api/v1/blocked-users/{bob.id}", headers=auth(alice))
    assert res.status_code == 200
    res = await client.delete(f"/api/v1/blocked-users/{bob.id}", headers=auth(alice))
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_presence_endpoints(client, hub, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await connect(hub, alice)

    res = await client.put("/api/v1/presence/status", json={"status": "sleeping"}, headers=auth(alice))
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_STATUS"

    res = await client.put("/api/v1/presence/status", json={"status": "busy", "activity_message": "Focus"}, headers=auth(alice))
    assert res.json()["updated"] is True
    assert res.json()["presence"]["status"] == "busy"

    res = await client.get("/api/v1/presence/friends", headers=auth(bob))
    assert res.json()[0]["status"] == "busy"
    assert res.json()[0]["activity_message"] == "Focus"

    res = await client.put("/api/v1/presence/settings", json={"privacy_mode": "nobody"}, headers=auth(alice))
    assert res.json()["privacy_mode"] == "nobody"
    res = await client.get("/api/v1/presence/friends", headers=auth(bob))
    assert res.json()[0]["status"] == "offline"

    res = await client.put("/api/v1/presence/settings", json={"auto_away_minutes": 90}, headers=auth(alice))
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_notification_endpoints(client, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await client.post("/api/v1/friend-requests", json={"receiver_id": bob.id}, headers=auth(alice))

    res = await client.get("/api/v1/notifications/unread/count", headers=auth(bob))
    assert res.json() == {"success": True, "count": 1}
    page = (await client.get("/api/v1/notifications", headers=auth(bob))).json()
    notification_id = page["notifications"][0]["id"]
    assert page["notifications"][0]["type"] == "friend_request"

    res = await client.put(f"/api/v1/notifications/{notification_id}/read", headers=auth(alice))
    assert res.status_code == 404
    res = await client.put(f"/api/v1/notifications/{notification_id}/read", headers=auth(bob))
    assert res.status_code == 200
    res = await client.put("/api/v1/notifications/read-all", headers=auth(bob))
    assert res.json()["count"] == 0

    res = await client.post("/api/v1/notifications/batch/delete", json={"notification_ids": [notification_id]}, headers=auth(bob))
    assert res.json()["count"] == 1
    res = await client.post("/api/v1/notifications/batch/read", json={"notification_ids": []}, headers=auth(bob))
    assert res.status_code == 422

    prefs = (await client.get("/api/v1/notifications/preferences", headers=auth(bob))).json()
    assert len(prefs) == 7
    res = await client.put(
        "/api/v1/notifications/preferences",
        json=[{"notification_type": "friend_online", "enabled": False}],
        headers=auth(bob)
    )
    online = next(p for p in res.json() if p["notification_type"] == "friend_online")
    assert online["enabled"] is False


@pytest.mark.asyncio
async def test_activity_endpoints(client, hub, session_factory, users) -> None:
    alice, bob = users["alice"], users["bob"]
    await befriend(session_factory, alice, bob)
    await hub.activity.record(alice.id, "language_changed", {"language": "Greek"})

    res = await client.get("/api/v1/activity", headers=auth(bob))
    entry = res.json()["activities"][0]
    assert entry["formatted_message"] == "Alice is now learning Greek"
    assert res.json()["has_more"] is False

    res = await client.get("/api/v1/activity", params={"activity_type": "came_online"}, headers=auth(bob))
    assert res.json()["activities"] == []

    assert (await client.delete(f"/api/v1/activity/{entry['id']}", headers=auth(alice))).status_code == 404
    assert (await client.delete(f"/api/v1/activity/{entry['id']}", headers=auth(bob))).status_code == 200


@pytest.mark.asyncio
async def test_health_and_index(client) -> None:
    res = await client.get("/health")
    body = res.json()
    assert body["status"] == "healthy"
    assert body["services"] == {"database": "healthy", "redis": "disabled"}
    assert body["realtime"]["total_connections"] == 0

    res = await client.get("/")
    assert res.json()["websocket"] == "/ws"

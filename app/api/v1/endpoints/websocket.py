import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect, Query, status
from pydantic import ValidationError as PydanticValidationError

from app.core.security import user_id_from_token
from app.models.user import User
from app.repositories.user import UserRepository
from app.schemas.events import FriendMessageIn, IncomingEvent, TypingIn, WebSocketEventType
from app.services.connections import CONNECTION_LIMIT_EXCEEDED
from app.services.realtime import RealtimeHub
from app.utils.exceptions import CircleException, ValidationError

logger = logging.getLogger(__name__)

# "Try again later"
WS_1013_TRY_AGAIN_LATER = 1013


async def get_user_from_token(token: str, hub: RealtimeHub) -> Optional[User]:
    """Get an active user from a WebSocket token"""
    user_id = user_id_from_token(token)
    if user_id is None:
        return None
    try:
        async with hub.session_factory() as db:
            user = await UserRepository(db).get_by_id(user_id)
    except Exception as e:
        logger.error(f"Error loading user {user_id} for WebSocket: {e}")
        return None
    if not user or not user.is_active or user.is_blocked:
        return None
    return user


async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(..., description="JWT access token")
):
    """Realtime channel for presence, notifications and activity"""
    hub: RealtimeHub = websocket.app.state.hub
    user = await get_user_from_token(token, hub)
    if not user:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    transport = hub.transport
    transport.register(connection_id, websocket)

    added = await hub.registry.add_connection(
        connection_id,
        user.id,
        ip_address=websocket.client.host if websocket.client else None,
        user_agent=websocket.headers.get("user-agent"),
    )
    if not added:
        code = hub.registry.admission_error(user.id) or CONNECTION_LIMIT_EXCEEDED
        await transport.send_error(connection_id, "Too many connections", code)
        await transport.close(connection_id, code=WS_1013_TRY_AGAIN_LATER, reason=code)
        return

    try:
        presence = await hub.presence.get_presence(user.id)
        await transport.emit(connection_id, WebSocketEventType.PRESENCE_SELF.value, presence.model_dump(mode="json"))

        while True:
            raw = await websocket.receive_text()
            await hub.registry.touch(connection_id)
            await handle_websocket_message(hub, connection_id, user, raw)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for user {user.id} on {connection_id}: {e}")
    finally:
        await hub.registry.remove_connection(connection_id)
        transport.unregister(connection_id)


async def handle_websocket_message(hub: RealtimeHub, connection_id: str, user: User, raw: str) -> None:
    """Parse one client frame and dispatch it; errors go back as ``error`` frames"""
    transport = hub.transport
    try:
        message_data = json.loads(raw)
    except json.JSONDecodeError:
        await transport.send_error(connection_id, "Invalid JSON format", "INVALID_JSON")
        return

    try:
        event = IncomingEvent(**message_data) if isinstance(message_data, dict) else None
    except (PydanticValidationError, TypeError) as e:
        await transport.send_error(connection_id, f"Invalid message format: {e}", "INVALID_FORMAT")
        return
    if event is None:
        await transport.send_error(connection_id, "Message must be a JSON object", "INVALID_FORMAT")
        return

    try:
        await dispatch_event(hub, connection_id, user, event)
    except CircleException as e:
        await transport.send_error(connection_id, e.message, e.code)
    except PydanticValidationError as e:
        await transport.send_error(connection_id, f"Invalid {event.type.value} payload: {e}", "INVALID_FORMAT")
    except Exception as e:
        logger.error(f"Error handling {event.type.value} for user {user.id}: {e}")
        await transport.send_error(connection_id, "Error processing message", "PROCESSING_ERROR")


async def dispatch_event(hub: RealtimeHub, connection_id: str, user: User, event: IncomingEvent) -> None:
    transport = hub.transport
    data: Dict[str, Any] = event.data

    if event.type == WebSocketEventType.PING:
        await transport.emit(connection_id, WebSocketEventType.PONG.value, {"server_time": data.get("client_time")})

    elif event.type == WebSocketEventType.ACK:
        if not event.ack_id:
            raise ValidationError("ack_id is required", "MISSING_FIELDS")
        transport.resolve_ack(event.ack_id, data)

    elif event.type == WebSocketEventType.PRESENCE_UPDATE:
        new_status = data.get("status")
        if not isinstance(new_status, str):
            raise ValidationError("status is required", "MISSING_FIELDS")
        activity_message = data.get("activity_message")
        hub.presence.validate_update(new_status, activity_message)
        await hub.presence.set_status(user.id, new_status, activity_message)
        presence = await hub.presence.get_presence(user.id)
        await transport.emit(connection_id, WebSocketEventType.PRESENCE_SELF.value, presence.model_dump(mode="json"))

    elif event.type == WebSocketEventType.FRIENDS_PRESENCE:
        friends = await hub.presence.get_friends_presence(user.id)
        await transport.emit(
            connection_id,
            WebSocketEventType.FRIENDS_PRESENCE.value,
            {"friends": [friend.model_dump(mode="json") for friend in friends]}
        )

    elif event.type == WebSocketEventType.NOTIFICATION_READ:
        if data.get("all"):
            await hub.dispatcher.mark_all_read(user.id)
            return
        ids = data.get("notification_ids")
        if ids is None and data.get("notification_id") is not None:
            ids = [data["notification_id"]]
        if not ids or not isinstance(ids, list):
            raise ValidationError("notification_ids is required", "MISSING_FIELDS")
        try:
            ids = [int(i) for i in ids]
        except (TypeError, ValueError):
            raise ValidationError("notification_ids must be integers", "INVALID_FORMAT")
        await hub.dispatcher.mark_many_read(user.id, ids)

    elif event.type == WebSocketEventType.ACTIVITY_HIDE:
        activity_id = data.get("activity_id")
        if not isinstance(activity_id, int):
            raise ValidationError("activity_id is required", "MISSING_FIELDS")
        await hub.activity.hide(user.id, activity_id)

    elif event.type == WebSocketEventType.FRIEND_MESSAGE:
        payload = FriendMessageIn(**data)
        await hub.relay_message(user.id, payload.friend_id, payload.message)

    elif event.type == WebSocketEventType.TYPING:
        payload = TypingIn(**data)
        await hub.relay_typing(user.id, payload.friend_id, payload.is_typing)

    else:
        await transport.send_error(
            connection_id,
            f"Unsupported message type: {event.type.value}",
            "UNSUPPORTED_TYPE"
        )

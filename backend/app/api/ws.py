"""Live event stream delivering realtime events to connected clients."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

import anyio
from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import ValidationError

from app.config import get_settings
from app.database import get_db_session
from app.schemas import PresenceUpdate
from app.services.delivery import safe_send_json
from app.services.errors import NexusError, Unauthenticated
from app.services.identity import IdentityGate, UserIdentity
from app.services.realtime import get_presence_tracker

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            if interval <= 0:
                should_ping = True
            else:
                should_ping = now - last_activity >= interval and (
                    last_ping_sent is None or now - last_ping_sent >= interval
                )

            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


async def _resolve_identity(websocket: WebSocket) -> UserIdentity | None:
    token = _extract_token(websocket)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return IdentityGate(db).authenticate(token)
    except Unauthenticated:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, code: str, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "code": code, "detail": detail})


async def _handle_frame(websocket: WebSocket, identity: UserIdentity, raw_message: str) -> None:
    text = raw_message.strip()
    if not text:
        return
    if text.lower() == "ping":
        await safe_send_json(websocket, {"type": "pong"})
        return
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        await _send_error(websocket, "invalid_payload", "Invalid payload")
        return
    if not isinstance(payload, dict):
        await _send_error(websocket, "invalid_payload", "Invalid payload")
        return

    frame_type = payload.get("type")
    if frame_type == "ping":
        await safe_send_json(websocket, {"type": "pong"})
    elif frame_type in ("pong", "heartbeat"):
        return
    elif frame_type == "presence":
        try:
            update = PresenceUpdate.model_validate(payload)
        except ValidationError:
            await _send_error(websocket, "invalid_input", "Presence must be 'online' or 'away'")
            return
        try:
            await get_presence_tracker().set_status(identity.user_id, update.status)
        except NexusError as exc:
            await _send_error(websocket, exc.code, exc.detail)
    else:
        await _send_error(websocket, "unsupported_type", f"Unsupported frame type: {frame_type!r}")


@router.websocket("/events")
async def websocket_events(websocket: WebSocket) -> None:
    """Stream tagged events (messages, friend requests, presence) to the caller."""

    identity = await _resolve_identity(websocket)
    if identity is None:
        return

    presence = get_presence_tracker()
    await websocket.accept()
    try:
        await presence.connect(identity.user_id, websocket)
        logger.info("Event stream connected", extra={"user_id": identity.user_id})
        await safe_send_json(websocket, {"type": "ready", "user_id": identity.user_id})
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            await presence.heartbeat(identity.user_id, websocket)
            await _handle_frame(websocket, identity, raw_message)
    finally:
        # Teardown must finish even when the handler task is being cancelled.
        with anyio.CancelScope(shield=True):
            await presence.disconnect(identity.user_id, websocket)
        logger.info("Event stream disconnected", extra={"user_id": identity.user_id})

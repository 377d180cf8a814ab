"""Per-user fan-out of realtime events to live event stream connections."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from pydantic import ValidationError

from app.monitoring.metrics import (
    realtime_connections,
    realtime_events_total,
    realtime_publish_errors_total,
)
from app.schemas.events import Event, parse_event
from nexus.realtime import EVENTS_TOPIC, RedisTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send *data* unless the socket is gone; report whether it was written."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


class DeliveryRouter:
    """Registry of live connections keyed by user id.

    Delivery is at-most-once per connection and best effort: a connection
    that is closing simply misses the event. The registry is only touched
    under ``_lock``; sends happen on a snapshot taken outside of it.

    When a :class:`RedisTransport` is supplied, published events are also
    relayed to other nodes, which deliver them to their own connections.
    """

    def __init__(self, transport: RedisTransport | None = None, *, node_id: str | None = None) -> None:
        self._connections: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._transport = transport
        self._node_id = node_id or uuid.uuid4().hex
        self._subscription: Subscription | None = None
        self._relay_warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def relaying(self) -> bool:
        return self._subscription is not None

    async def register(self, user_id: int, websocket: WebSocket) -> int:
        """Add a connection and return how many the user now has."""

        async with self._lock:
            sockets = self._connections[user_id]
            sockets.add(websocket)
            count = len(sockets)
            total = sum(len(items) for items in self._connections.values())
        realtime_connections.labels("events").set(total)
        return count

    async def unregister(self, user_id: int, websocket: WebSocket) -> int | None:
        """Remove a connection.

        Returns the number of connections the user still has, or ``None`` when
        the connection was not registered (already removed).
        """

        async with self._lock:
            sockets = self._connections.get(user_id)
            if not sockets or websocket not in sockets:
                return None
            sockets.discard(websocket)
            remaining = len(sockets)
            if not sockets:
                self._connections.pop(user_id, None)
            total = sum(len(items) for items in self._connections.values())
        realtime_connections.labels("events").set(total)
        return remaining

    async def connection_count(self, user_id: int) -> int:
        async with self._lock:
            return len(self._connections.get(user_id, ()))

    async def connected_users(self) -> set[int]:
        async with self._lock:
            return set(self._connections)

    async def publish(self, event: Event, recipient_ids: Iterable[int]) -> int:
        """Deliver *event* to every live connection of every recipient.

        Returns the number of local connections the event was written to.
        """

        recipients = {int(user_id) for user_id in recipient_ids}
        if not recipients:
            return 0
        payload = event.model_dump(mode="json")
        delivered = await self._deliver_local(event.type, payload, recipients)
        if self._subscription is not None:
            await self._relay(event.type, payload, recipients)
        return delivered

    async def _deliver_local(self, event_type: str, payload: dict[str, Any], recipients: Set[int]) -> int:
        async with self._lock:
            targets = [
                socket
                for user_id in recipients
                for socket in self._connections.get(user_id, ())
            ]
        delivered = 0
        for socket in targets:
            if await safe_send_json(socket, payload):
                delivered += 1
            else:
                realtime_events_total.labels(event_type, "out", "dropped").inc()
        if delivered:
            realtime_events_total.labels(event_type, "out", "delivered").inc(delivered)
        return delivered

    async def _relay(self, event_type: str, payload: dict[str, Any], recipients: Set[int]) -> None:
        assert self._transport is not None
        message = {"origin": self._node_id, "recipients": sorted(recipients), "event": payload}
        try:
            await self._transport.publish(EVENTS_TOPIC, message)
        except TransportUnavailableError:
            realtime_publish_errors_total.labels("redis").inc()
            if not self._relay_warning_logged:
                logger.warning(
                    "Realtime relay unavailable while publishing %s; delivering locally only",
                    event_type,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._relay_warning_logged = True
        else:
            self._relay_warning_logged = False

    async def _handle_relayed(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        try:
            event = parse_event(message.get("event") or {})
            recipients = {int(user_id) for user_id in message.get("recipients", [])}
        except (ValidationError, TypeError, ValueError):
            logger.warning("Discarded malformed relayed event", extra={"origin": message.get("origin")})
            return
        realtime_events_total.labels(event.type, "in", "relayed").inc()
        await self._deliver_local(event.type, event.model_dump(mode="json"), recipients)

    async def start(self) -> None:
        """Subscribe to events relayed by other nodes, if a transport is configured."""

        if self._transport is None or not self._transport.configured or self._subscription is not None:
            return
        try:
            self._subscription = await self._transport.subscribe(EVENTS_TOPIC, self._handle_relayed)
        except TransportUnavailableError:
            logger.warning(
                "Realtime relay unavailable; events will only reach connections on this node",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

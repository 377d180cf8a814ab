"""In-memory presence tracking backed by the delivery router's connection registry."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable

from fastapi import status
from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.models.base import utcnow
from app.models.enums import PresenceStatus
from app.monitoring.metrics import presence_transitions_total
from app.schemas.events import PresenceChangedEvent
from app.services.delivery import DeliveryRouter
from app.services.errors import Forbidden, InvalidInput

logger = logging.getLogger(__name__)

AudienceResolver = Callable[[int], Awaitable[Iterable[int]]]


async def _no_audience(_user_id: int) -> Iterable[int]:
    return ()


@dataclass(slots=True)
class PresenceState:
    user_id: int
    status: PresenceStatus
    changed_at: datetime


class PresenceTracker:
    """Derive online/away/offline state from live connections.

    * The first live connection marks a user ``online``.
    * When the last connection goes away the user is marked ``offline`` only
      after ``grace_seconds`` without a reconnect.
    * Connections that have not sent anything for ``heartbeat_timeout_seconds``
      are reaped by a background sweep.

    Every transition is announced as ``presence.changed`` to the audience
    returned by ``audience_resolver`` (friends and conversation co-members).
    State lives in memory only, so every user is ``offline`` after a restart.
    Connections are counted per node: with the Redis relay enabled, a user
    whose last connection on this node closes is announced ``offline`` even
    while they still hold a connection on another node.
    """

    def __init__(
        self,
        router: DeliveryRouter,
        audience_resolver: AudienceResolver | None = None,
        *,
        grace_seconds: float = 5.0,
        heartbeat_timeout_seconds: float = 90.0,
        sweep_interval_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router
        self._resolve_audience = audience_resolver or _no_audience
        self._grace = max(float(grace_seconds), 0.0)
        self._heartbeat_timeout = float(heartbeat_timeout_seconds)
        self._sweep_interval = float(sweep_interval_seconds)
        self._clock = clock
        self._states: Dict[int, PresenceState] = {}
        self._last_seen: Dict[WebSocket, tuple[int, float]] = {}
        self._pending_offline: Dict[int, asyncio.Task[None]] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def router(self) -> DeliveryRouter:
        return self._router

    def status_of(self, user_id: int) -> PresenceStatus:
        state = self._states.get(user_id)
        return state.status if state is not None else PresenceStatus.OFFLINE

    def snapshot(self, user_ids: Iterable[int]) -> dict[int, PresenceStatus]:
        return {user_id: self.status_of(user_id) for user_id in user_ids}

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await self._router.register(user_id, websocket)
        announcement: PresenceState | None = None
        async with self._lock:
            self._last_seen[websocket] = (user_id, self._clock())
            pending = self._pending_offline.pop(user_id, None)
            if pending is not None:
                pending.cancel()
            if self.status_of(user_id) == PresenceStatus.OFFLINE:
                announcement = self._transition(user_id, PresenceStatus.ONLINE)
        if announcement is not None:
            await self._announce(announcement)

    async def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self._last_seen.pop(websocket, None)
        remaining = await self._router.unregister(user_id, websocket)
        if remaining is None or remaining > 0:
            return
        if self._grace == 0:
            await self._go_offline(user_id)
            return
        async with self._lock:
            if user_id not in self._pending_offline:
                self._pending_offline[user_id] = asyncio.create_task(
                    self._expire_after_grace(user_id), name=f"presence-offline-{user_id}"
                )

    async def heartbeat(self, user_id: int, websocket: WebSocket | None = None) -> None:
        now = self._clock()
        async with self._lock:
            if websocket is not None:
                if websocket in self._last_seen:
                    self._last_seen[websocket] = (user_id, now)
                return
            for socket, (owner_id, _seen) in list(self._last_seen.items()):
                if owner_id == user_id:
                    self._last_seen[socket] = (user_id, now)

    async def set_status(self, user_id: int, presence: PresenceStatus) -> PresenceStatus:
        """Switch between ``online`` and ``away`` while connected."""

        if presence == PresenceStatus.OFFLINE:
            raise InvalidInput("Presence can only be set to online or away")
        if await self._router.connection_count(user_id) == 0:
            raise Forbidden("Presence can only be changed while connected")
        announcement: PresenceState | None = None
        async with self._lock:
            if self.status_of(user_id) != presence:
                announcement = self._transition(user_id, presence)
        if announcement is not None:
            await self._announce(announcement)
        return presence

    async def sweep(self) -> int:
        """Disconnect connections that stopped sending heartbeats."""

        deadline = self._clock() - self._heartbeat_timeout
        async with self._lock:
            expired = [
                (socket, user_id)
                for socket, (user_id, seen) in self._last_seen.items()
                if seen < deadline
            ]
        for socket, user_id in expired:
            logger.info("Reaping silent event stream connection", extra={"user_id": user_id})
            await self._close_quietly(socket)
            await self.disconnect(user_id, socket)
        return len(expired)

    async def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="presence-heartbeat-sweeper")

    async def stop(self) -> None:
        tasks = list(self._pending_offline.values())
        self._pending_offline.clear()
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Presence sweep failed")

    async def _expire_after_grace(self, user_id: int) -> None:
        await asyncio.sleep(self._grace)
        await self._go_offline(user_id)

    async def _go_offline(self, user_id: int) -> None:
        announcement: PresenceState | None = None
        async with self._lock:
            if self._pending_offline.get(user_id) is asyncio.current_task():
                self._pending_offline.pop(user_id, None)
            if await self._router.connection_count(user_id) > 0:
                return
            if self.status_of(user_id) != PresenceStatus.OFFLINE:
                announcement = self._transition(user_id, PresenceStatus.OFFLINE)
        if announcement is not None:
            await self._announce(announcement)

    def _transition(self, user_id: int, presence: PresenceStatus) -> PresenceState:
        state = PresenceState(user_id=user_id, status=presence, changed_at=utcnow())
        if presence == PresenceStatus.OFFLINE:
            self._states.pop(user_id, None)
        else:
            self._states[user_id] = state
        presence_transitions_total.labels(presence.value).inc()
        return state

    async def _announce(self, state: PresenceState) -> None:
        try:
            audience = {int(user_id) for user_id in await self._resolve_audience(state.user_id)}
        except Exception:
            logger.exception("Failed to resolve presence audience", extra={"user_id": state.user_id})
            return
        audience.discard(state.user_id)
        if not audience:
            return
        event = PresenceChangedEvent(user_id=state.user_id, status=state.status, changed_at=state.changed_at)
        await self._router.publish(event, audience)

    @staticmethod
    async def _close_quietly(websocket: WebSocket) -> None:
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.close(code=status.WS_1001_GOING_AWAY)
        except (RuntimeError, WebSocketDisconnect) as exc:
            logger.debug("Failed to close stale websocket: %s", exc)

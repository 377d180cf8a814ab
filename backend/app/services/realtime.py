"""Process-wide realtime singletons and their lifecycle."""

from __future__ import annotations

import logging
import uuid

from app.config import get_settings
from app.database import get_db_session
from app.services.conversations import ConversationDirectory
from app.services.delivery import DeliveryRouter
from app.services.presence import PresenceTracker
from app.services.social_graph import SocialGraphManager
from nexus.realtime import BrokerConfig, RedisTransport, TransportUnavailableError

logger = logging.getLogger(__name__)

settings = get_settings()


async def resolve_presence_audience(user_id: int) -> set[int]:
    """Friends and conversation co-members of *user_id*."""

    with get_db_session() as db:
        audience = SocialGraphManager(db).friend_ids(user_id)
        audience |= ConversationDirectory(db).co_member_ids(user_id)
    return audience


_node_id = settings.realtime_node_id or uuid.uuid4().hex

transport = RedisTransport(
    BrokerConfig(
        redis_url=settings.realtime_redis_url,
        prefix=settings.realtime_namespace,
        node_id=_node_id,
    )
)

delivery_router = DeliveryRouter(transport, node_id=_node_id)

presence_tracker = PresenceTracker(
    delivery_router,
    resolve_presence_audience,
    grace_seconds=settings.presence_grace_seconds,
    heartbeat_timeout_seconds=settings.presence_heartbeat_timeout_seconds,
    sweep_interval_seconds=settings.presence_sweep_interval_seconds,
)


async def startup_realtime() -> None:
    await presence_tracker.start()
    if not transport.configured:
        logger.info("No realtime relay configured; events are delivered to local connections only")
        return
    try:
        await transport.start()
    except TransportUnavailableError:
        logger.warning(
            "Realtime relay unavailable during startup; continuing without cross-node delivery",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return
    await delivery_router.start()


async def shutdown_realtime() -> None:
    await presence_tracker.stop()
    await delivery_router.stop()
    await transport.stop()


def get_delivery_router() -> DeliveryRouter:
    return delivery_router


def get_presence_tracker() -> PresenceTracker:
    return presence_tracker


__all__ = [
    "startup_realtime",
    "shutdown_realtime",
    "get_delivery_router",
    "get_presence_tracker",
    "resolve_presence_audience",
]

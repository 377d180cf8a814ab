"""Cross-node relay for realtime events."""

from .transport import (
    EVENTS_TOPIC,
    BrokerConfig,
    RedisTransport,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "EVENTS_TOPIC",
    "BrokerConfig",
    "RedisTransport",
    "Subscription",
    "TransportUnavailableError",
]

"""Metric definitions for the realtime and storage layers."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the delivery router.",
    label_names=("event", "direction", "action"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of live event stream connections handled locally.",
    label_names=("scope",),
)

realtime_subscriptions = registry.gauge(
    "realtime_pubsub_subscriptions",
    "Number of active broker subscriptions.",
    label_names=("topic", "backend"),
)

presence_transitions_total = registry.counter(
    "presence_transitions_total",
    "Presence state changes announced to other users.",
    label_names=("status",),
)

messages_appended_total = registry.counter(
    "messages_appended_total",
    "Messages durably appended to conversation logs.",
    label_names=("conversation_type",),
)

db_retries_total = registry.counter(
    "db_retries_total",
    "Transient database failures that were retried.",
    label_names=("operation", "outcome"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of times the realtime relay reconnected to its broker.",
    label_names=("backend", "reason"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Events that could not be relayed to other nodes.",
    label_names=("backend",),
)

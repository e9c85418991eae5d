from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS = Gauge(
    "wagateway_sessions",
    "Number of user sessions per connection status",
    labelnames=("status",),
)
STATE_TRANSITIONS_TOTAL = Counter(
    "wagateway_state_transitions_total",
    "Session status transitions grouped by target status",
    labelnames=("to",),
)
MESSAGES_RECEIVED_TOTAL = Counter(
    "wagateway_messages_received_total", "Inbound messages persisted for users"
)
MESSAGES_SENT_TOTAL = Counter(
    "wagateway_messages_sent_total", "Outbound messages sent on behalf of users"
)
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "wagateway_webhook_deliveries_total",
    "Webhook delivery attempts grouped by result",
    labelnames=("result",),
)
EVENT_ERRORS = Counter(
    "wagateway_events_errors_total",
    "Session and event handling errors grouped by category",
    labelnames=("type",),
)

__all__ = [
    "SESSIONS",
    "STATE_TRANSITIONS_TOTAL",
    "MESSAGES_RECEIVED_TOTAL",
    "MESSAGES_SENT_TOTAL",
    "WEBHOOK_DELIVERIES_TOTAL",
    "EVENT_ERRORS",
]

"""
Observability events.

Structured events for issuance, revocation, federation and policy
decisions, delivered best effort to subscribed sinks.
"""

from .bus import (
    ALL_EVENT_TYPES,
    EVENT_ATTESTATION_REJECTED,
    EVENT_AUTHORITY_ROTATED,
    EVENT_FEDERATION_BOOTSTRAP,
    EVENT_FEDERATION_DEGRADED,
    EVENT_FEDERATION_IMPORTED,
    EVENT_FEDERATION_REJECTED,
    EVENT_IDENTITY_DENIED,
    EVENT_IDENTITY_ISSUED,
    EVENT_IDENTITY_REVOKED,
    EVENT_POLICY_CHANGED,
    EVENT_POLICY_EVALUATED,
    EVENT_REGISTRATION_CHANGED,
    Event,
    EventBus,
    EventHandler,
    InMemoryEventBus,
    QueuedEventBus,
)

__all__ = [
    "ALL_EVENT_TYPES",
    "EVENT_ATTESTATION_REJECTED",
    "EVENT_AUTHORITY_ROTATED",
    "EVENT_FEDERATION_BOOTSTRAP",
    "EVENT_FEDERATION_DEGRADED",
    "EVENT_FEDERATION_IMPORTED",
    "EVENT_FEDERATION_REJECTED",
    "EVENT_IDENTITY_DENIED",
    "EVENT_IDENTITY_ISSUED",
    "EVENT_IDENTITY_REVOKED",
    "EVENT_POLICY_CHANGED",
    "EVENT_POLICY_EVALUATED",
    "EVENT_REGISTRATION_CHANGED",
    "Event",
    "EventBus",
    "EventHandler",
    "InMemoryEventBus",
    "QueuedEventBus",
]

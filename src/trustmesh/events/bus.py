"""
Event bus for the observability sink.

Core operations emit structured events for issuance, revocation, federation
import/rejection and policy decisions. Delivery is best effort: the queued
bus never blocks the emitting call and drops events under backpressure.
"""

from __future__ import annotations

import fnmatch
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)


# Standard event types
EVENT_IDENTITY_ISSUED = "identity.issued"
EVENT_IDENTITY_DENIED = "identity.denied"
EVENT_IDENTITY_REVOKED = "identity.revoked"
EVENT_AUTHORITY_ROTATED = "authority.rotated"
EVENT_ATTESTATION_REJECTED = "attestation.rejected"
EVENT_REGISTRATION_CHANGED = "registration.changed"
EVENT_FEDERATION_IMPORTED = "federation.imported"
EVENT_FEDERATION_REJECTED = "federation.rejected"
EVENT_FEDERATION_BOOTSTRAP = "federation.bootstrap"
EVENT_FEDERATION_DEGRADED = "federation.degraded"
EVENT_POLICY_EVALUATED = "policy.evaluated"
EVENT_POLICY_CHANGED = "policy.changed"

ALL_EVENT_TYPES = [
    EVENT_IDENTITY_ISSUED,
    EVENT_IDENTITY_DENIED,
    EVENT_IDENTITY_REVOKED,
    EVENT_AUTHORITY_ROTATED,
    EVENT_ATTESTATION_REJECTED,
    EVENT_REGISTRATION_CHANGED,
    EVENT_FEDERATION_IMPORTED,
    EVENT_FEDERATION_REJECTED,
    EVENT_FEDERATION_BOOTSTRAP,
    EVENT_FEDERATION_DEGRADED,
    EVENT_POLICY_EVALUATED,
    EVENT_POLICY_CHANGED,
]


@dataclass
class Event:
    """An event emitted by a TrustMesh component."""

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: f"evt-{time.monotonic_ns()}")


EventHandler = Callable[[Event], Any]


class EventBus(ABC):
    """Abstract base class for event bus implementations."""

    @abstractmethod
    def emit(self, event: Event) -> None:
        """Emit an event to all matching subscribers. Must never raise."""

    @abstractmethod
    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe a handler to events matching a glob-style pattern.

        Args:
            pattern: Glob-style pattern (e.g., ``federation.*``, ``*``).
            handler: Callable invoked with the matching Event.
        """

    @abstractmethod
    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a handler from all subscriptions."""

    def publish(self, event_type: str, source: str, **payload: Any) -> None:
        """Build and emit an event in one call."""
        self.emit(Event(event_type=event_type, source=source, payload=payload))


def _deliver(subscriptions: list[tuple[str, EventHandler]], event: Event) -> None:
    for pattern, handler in subscriptions:
        if fnmatch.fnmatch(event.event_type, pattern):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.event_type)


class InMemoryEventBus(EventBus):
    """Synchronous in-process event bus with glob-style pattern matching."""

    def __init__(self) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []

    def emit(self, event: Event) -> None:
        _deliver(list(self._subscriptions), event)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscriptions = [
            (p, h) for p, h in self._subscriptions if h != handler
        ]


class QueuedEventBus(EventBus):
    """Bounded queue drained by a background thread.

    ``emit`` uses ``put_nowait`` and counts the event as dropped when the
    queue is full, so a slow sink can never stall a core operation.
    """

    def __init__(self, maxsize: int = 10000) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self._worker: threading.Thread | None = None
        self._stopping = threading.Event()
        self.dropped = 0

    def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscriptions = [
            (p, h) for p, h in self._subscriptions if h != handler
        ]

    def start(self) -> None:
        """Start the background delivery thread."""
        if self._worker is not None:
            return
        self._stopping.clear()
        self._worker = threading.Thread(
            target=self._consume, name="trustmesh-events", daemon=True
        )
        self._worker.start()

    def stop(self) -> None:
        """Stop the delivery thread and drain remaining events."""
        self._stopping.set()
        if self._worker is not None:
            self._worker.join(timeout=5.0)
            self._worker = None
        self.drain()

    def drain(self) -> int:
        """Deliver every queued event synchronously. Returns the count."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            _deliver(list(self._subscriptions), event)
            delivered += 1

    def _consume(self) -> None:
        while not self._stopping.is_set():
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            _deliver(list(self._subscriptions), event)

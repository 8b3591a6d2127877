"""
Carbon Credit Registry Event Infrastructure

Notifications the registry emits after each committed state change, the
append-only store that keeps them in order, and a pub/sub bus for
consumers.

Architecture
────────────

    ┌──────────────────────────────────────────────────────────────────┐
    │                       EVENT INFRASTRUCTURE                        │
    │                                                                   │
    │  Domain Events          Event Store           Event Bus           │
    │  ├─ CreditIssued        ├─ Append-only        ├─ Typed pub/sub    │
    │  ├─ VerificationChanged ├─ Global sequence    ├─ Priorities       │
    │  ├─ Paused              ├─ Per-credit streams └─ Error isolation  │
    │  └─ Unpaused            └─ Replay                                 │
    │                                                                   │
    └──────────────────────────────────────────────────────────────────┘

Ordering: events of one credit are appended to that credit's stream in the
order the registry committed them. Consumers must tolerate seeing an event
more than once (at-least-once delivery), but never out of order within a
stream.

Usage
─────

    store = EventStore()
    bus = EventBus()
    sink = RegistryEventSink(store, bus)

    @bus.subscribe(CreditIssued)
    def on_issued(event: CreditIssued):
        print(f"Credit {event.credit_id} issued")

    registry = LifecycleController(authorizer, ledger, sink=sink)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from carbonreg.observability import RegistryLayer, get_correlation_id, get_logger

logger = get_logger("events", RegistryLayer.EVENTS)

REGISTRY_STREAM = "registry"


def credit_stream(credit_id: int) -> str:
    """Stream identifier holding one credit's history."""
    return f"credit-{credit_id}"


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all registry events.

    Events are immutable facts about something the registry committed.
    Each event has a unique ID, a timestamp, and the correlation ID of the
    request that produced it.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: str = field(default_factory=get_correlation_id)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @property
    def stream_id(self) -> str:
        return REGISTRY_STREAM

    def payload(self) -> Dict[str, Any]:
        """Domain fields only, without delivery metadata."""
        data = asdict(self)
        for key in ("event_id", "event_timestamp", "correlation_id"):
            data.pop(key, None)
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        """Serialize event to JSON for display/transport (not for digest computation)."""
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        """
        Deterministic digest of the event's type and payload.

        Redelivered copies of the same fact share a digest even though their
        delivery metadata differs, so consumers can deduplicate on it.
        """
        body = {"event_type": self.event_type, **self.payload()}
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class CreditIssued(Event):
    """Emitted when a credit is issued."""
    credit_id: int = 0
    longitude: int = 0
    latitude: int = 0
    start_date: int = 0
    end_date: int = 0
    co2_equivalent: int = 0

    @property
    def stream_id(self) -> str:
        return credit_stream(self.credit_id)


@dataclass
class VerificationChanged(Event):
    """Emitted when a credit's verification flag is set."""
    credit_id: int = 0
    status: bool = False

    @property
    def stream_id(self) -> str:
        return credit_stream(self.credit_id)


@dataclass
class Paused(Event):
    """Emitted when the registry is paused."""
    account: str = ""


@dataclass
class Unpaused(Event):
    """Emitted when the registry is unpaused."""
    account: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Handlers run synchronously in priority order. A failing handler is
    counted and reported to ``on_error``; it never propagates into the
    publisher.

    Example:
        bus = EventBus()

        @bus.subscribe(CreditIssued, VerificationChanged)
        def handle_credit_events(event):
            print(f"Credit event: {event.event_type}")

        bus.publish(CreditIssued(credit_id=1))
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        Args:
            event_types: Event types to subscribe to (default: all events)
            priority: Handler priority (higher = earlier)
            filter_func: Optional filter function
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                registration for registration in self._handlers
                if any(isinstance(event, t) for t in registration.event_types)
                and (registration.filter_func is None or registration.filter_func(event))
            ]

        # Call handlers outside the lock
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning(str(error), operation="publish", event_type=event.event_type)
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT STORE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class EventRecord:
    """A stored event with its global and per-stream position."""
    sequence_number: int
    event: Event
    stream_id: str
    version: int
    recorded_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "event": self.event.to_dict(),
            "stream_id": self.stream_id,
            "version": self.version,
            "recorded_at": self.recorded_at,
        }


class ConcurrencyError(Exception):
    """Optimistic concurrency violation."""
    def __init__(self, stream_id: str, expected: int, actual: int):
        self.stream_id = stream_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrency error for stream '{stream_id}': "
            f"expected version {expected}, actual {actual}"
        )


class EventStore:
    """
    Append-only event store.

    Events are organized into streams (one per credit, plus the
    ``registry`` stream for pause/unpause) and carry a global sequence
    number.

    Example:
        store = EventStore()
        store.append("credit-1", [CreditIssued(credit_id=1)])
        events = store.read_stream("credit-1")
        records = store.read_all(from_position=0)
    """

    def __init__(self):
        self._events: List[EventRecord] = []
        self._streams: Dict[str, List[EventRecord]] = {}
        self._sequence_number = 0
        self._lock = threading.RLock()

    def append(
        self,
        stream_id: str,
        events: List[Event],
        expected_version: Optional[int] = None,
    ) -> List[EventRecord]:
        """
        Append events to a stream.

        Raises:
            ConcurrencyError: If expected_version doesn't match
        """
        with self._lock:
            stream = self._streams.setdefault(stream_id, [])
            current_version = len(stream)

            if expected_version is not None and expected_version != current_version:
                raise ConcurrencyError(stream_id, expected_version, current_version)

            records = []
            for event in events:
                self._sequence_number += 1
                current_version += 1
                record = EventRecord(
                    sequence_number=self._sequence_number,
                    event=event,
                    stream_id=stream_id,
                    version=current_version,
                )
                self._events.append(record)
                stream.append(record)
                records.append(record)

            return records

    def read_stream(
        self,
        stream_id: str,
        from_version: int = 0,
        to_version: Optional[int] = None,
    ) -> List[Event]:
        with self._lock:
            stream = self._streams.get(stream_id, [])
            end = len(stream) if to_version is None else to_version
            return [r.event for r in stream[from_version:end]]

    def read_all(
        self,
        from_position: int = 0,
        max_count: int = 1000,
    ) -> List[EventRecord]:
        with self._lock:
            return self._events[from_position:from_position + max_count]

    def stream_version(self, stream_id: str) -> int:
        with self._lock:
            return len(self._streams.get(stream_id, []))

    def stream_ids(self) -> List[str]:
        with self._lock:
            return list(self._streams.keys())

    @property
    def total_events(self) -> int:
        with self._lock:
            return len(self._events)


# ════════════════════════════════════════════════════════════════════════════
# SINKS
# ════════════════════════════════════════════════════════════════════════════


class EventSink(ABC):
    """Receives the registry's notifications in commit order."""

    @abstractmethod
    def emit(self, event: Event) -> None:
        pass


class RegistryEventSink(EventSink):
    """Appends each event to its stream, then publishes it on the bus."""

    def __init__(self, store: Optional[EventStore] = None, bus: Optional[EventBus] = None):
        self.store = store if store is not None else EventStore()
        self.bus = bus if bus is not None else EventBus()

    def emit(self, event: Event) -> None:
        self.store.append(event.stream_id, [event])
        self.bus.publish(event)

# src/goalsync/events.py
"""
Typed event channel between the goal engine and its consumers.

Subscribers attach in one of two ways:

- observers: a sync or async callable registered with :meth:`EventBus.subscribe`
- queues: :meth:`EventBus.stream` returns an :class:`EventQueue` that can be
  consumed with ``await queue.get()`` or ``async for event in queue``

Neither kind can break emission: observer exceptions are logged, and a
full queue drops its oldest event.

Event Types:
- achievement, milestone
- syncStart, syncComplete, syncError
- offlineChange, networkChange, goalsUpdated

Usage:
    bus = EventBus()
    sub = bus.subscribe(print, {EventType.ACHIEVEMENT})
    await bus.emit(EventType.ACHIEVEMENT, {"title": "Buy green"}, goal_id="g1")
    sub.unsubscribe()
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Union

from .models import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Named events emitted by the engine."""

    ACHIEVEMENT = "achievement"
    MILESTONE = "milestone"
    SYNC_START = "syncStart"
    SYNC_COMPLETE = "syncComplete"
    SYNC_ERROR = "syncError"
    OFFLINE_CHANGE = "offlineChange"
    NETWORK_CHANGE = "networkChange"
    GOALS_UPDATED = "goalsUpdated"


@dataclass
class GoalEvent:
    """
    One emitted event.

    Attributes:
        type: Event type
        payload: Event-specific data (goal, progress, milestone, error...)
        goal_id: Goal the event concerns, if any
        timestamp: Emission time (UTC)
        event_id: Unique id
    """

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    goal_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "goalId": self.goal_id,
            "timestamp": self.timestamp.isoformat(),
            "eventId": self.event_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GoalEvent":
        return cls(
            type=EventType(data["type"]),
            payload=dict(data.get("payload") or {}),
            goal_id=data.get("goalId"),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            event_id=data.get("eventId") or uuid.uuid4().hex,
        )


EventListener = Callable[[GoalEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, bus: "EventBus", listener: EventListener, event_types: Optional[Set[EventType]]):
        self._bus = bus
        self.listener = listener
        self.event_types = event_types
        self.active = True

    def matches(self, event: GoalEvent) -> bool:
        return self.active and (self.event_types is None or event.type in self.event_types)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventQueue:
    """
    Queue-backed subscriber.

    When full, the oldest pending event is discarded to make room.
    """

    def __init__(self, bus: "EventBus", event_types: Optional[Set[EventType]], maxsize: int = 100):
        self._bus = bus
        self.event_types = event_types
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: GoalEvent) -> bool:
        return not self.closed and (self.event_types is None or event.type in self.event_types)

    def put(self, event: GoalEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning("Event queue full; dropped oldest event (%d dropped so far)", self.dropped)
        self._queue.put_nowait(event)

    async def get(self) -> GoalEvent:
        return await self._queue.get()

    def get_nowait(self) -> GoalEvent:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove(self)

    def __aiter__(self) -> "EventQueue":
        return self

    async def __anext__(self) -> GoalEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class EventBus:
    """
    Fan-out of GoalEvents to observers and queues.

    A bounded history of recent events is kept for inspection.

    Args:
        history_size: Number of recent events retained
    """

    def __init__(self, history_size: int = 200):
        self._subscriptions: List[Subscription] = []
        self._queues: List[EventQueue] = []
        self._history: Deque[GoalEvent] = deque(maxlen=history_size)

    @staticmethod
    def _normalize_types(event_types: Optional[Iterable[Union[EventType, str]]]) -> Optional[Set[EventType]]:
        if event_types is None:
            return None
        return {EventType(t) for t in event_types}

    def subscribe(
        self,
        listener: EventListener,
        event_types: Optional[Iterable[Union[EventType, str]]] = None,
    ) -> Subscription:
        """
        Register an observer for all events or only ``event_types``.

        Listeners may be plain functions or coroutine functions.
        """
        subscription = Subscription(self, listener, self._normalize_types(event_types))
        self._subscriptions.append(subscription)
        return subscription

    def stream(
        self,
        event_types: Optional[Iterable[Union[EventType, str]]] = None,
        maxsize: int = 100,
    ) -> EventQueue:
        """Open a queue subscriber for all events or only ``event_types``."""
        event_queue = EventQueue(self, self._normalize_types(event_types), maxsize=maxsize)
        self._queues.append(event_queue)
        return event_queue

    def _remove(self, subscriber: Union[Subscription, EventQueue]) -> None:
        if isinstance(subscriber, Subscription) and subscriber in self._subscriptions:
            self._subscriptions.remove(subscriber)
        elif isinstance(subscriber, EventQueue) and subscriber in self._queues:
            self._queues.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._queues)

    async def emit(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        goal_id: Optional[str] = None,
    ) -> GoalEvent:
        """Build an event and deliver it to every matching subscriber."""
        event = GoalEvent(type=EventType(event_type), payload=dict(payload or {}), goal_id=goal_id)
        await self.publish(event)
        return event

    async def publish(self, event: GoalEvent) -> None:
        self._history.append(event)
        logger.debug("Event %s goal=%s", event.type.value, event.goal_id)

        for event_queue in list(self._queues):
            if event_queue.matches(event):
                event_queue.put(event)

        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                outcome = subscription.listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Event listener failed on %s: %s", event.type.value, e, exc_info=True)

    def recent_events(self, event_type: Optional[Union[EventType, str]] = None) -> List[GoalEvent]:
        if event_type is None:
            return list(self._history)
        wanted = EventType(event_type)
        return [e for e in self._history if e.type == wanted]

    def clear(self) -> None:
        """Drop every subscriber and the history."""
        for subscription in list(self._subscriptions):
            subscription.active = False
        for event_queue in list(self._queues):
            event_queue.closed = True
        self._subscriptions.clear()
        self._queues.clear()
        self._history.clear()

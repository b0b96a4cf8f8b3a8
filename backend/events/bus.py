"""Async event bus for session pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between the orchestration core and its
observers (WebSocket clients, logging, the cost ledger).

The event bus is thread-safe and supports:
- Multiple subscribers per session, plus wildcard subscribers for every session
- Topic filtering against the closed EventType set
- Explicit unsubscribe handles so teardown releases every listener
- Session lifecycle management (close session terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field

import structlog

from events.types import EventType, SessionEvent

logger = structlog.get_logger(__name__)

# Subscription key that receives events of every session
ALL_SESSIONS = "*"


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``EventBus.subscribe``.

    Events arrive on ``queue``; ``unsubscribe()`` detaches the handle and is
    safe to call more than once. Iterating the handle yields events until the
    session is closed.
    """

    session_id: str
    queue: asyncio.Queue[SessionEvent]
    topics: frozenset[EventType] | None = None
    _bus: "EventBus | None" = field(default=None, repr=False)

    def accepts(self, event: SessionEvent) -> bool:
        if event.type == EventType.SESSION_CLOSED:
            return True
        return self.topics is None or event.type in self.topics

    @property
    def active(self) -> bool:
        return self._bus is not None

    def unsubscribe(self) -> None:
        bus, self._bus = self._bus, None
        if bus is not None:
            bus._remove(self)

    async def get(self) -> SessionEvent:
        return await self.queue.get()

    async def __aiter__(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self.queue.get()
            if event.type == EventType.SESSION_CLOSED:
                return
            yield event


class EventBus:
    """Async pub/sub event bus for session events.

    The EventBus manages subscriptions per session, allowing multiple
    WebSocket connections to receive events for the same session, and
    wildcard subscriptions (``session_id=None``) that see every session.
    Events are delivered via asyncio.Queue for non-blocking consumption.

    Event Buffering:
        Events published before any subscriber of that session connects are
        buffered. When the first subscriber connects, all buffered events are
        delivered immediately. This handles the race condition where the
        controller starts emitting events before the WebSocket connects.

    Thread Safety:
        All registry operations use a threading.Lock.

    Usage:
        >>> bus = EventBus()
        >>> sub = bus.subscribe("sess_123", topics=[EventType.SESSION_PROGRESS])
        >>> await bus.publish(SessionEvent(
        ...     type=EventType.SESSION_PROGRESS,
        ...     session_id="sess_123",
        ...     data={"type": "text", "payload": "hello"},
        ... ))
        >>> event = await sub.get()
        >>> sub.unsubscribe()

    Attributes:
        _subscribers: Dict mapping session_id (or ``*``) to subscriptions
        _event_buffer: Dict mapping session_id to buffered events
        _event_history: Dict mapping session_id to replayable events
        _lock: Threading lock for thread-safe subscriber management
    """

    # Maximum number of events to retain per session for replay on reconnect.
    MAX_HISTORY_PER_SESSION = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._event_buffer: dict[str, list[SessionEvent]] = defaultdict(list)
        self._event_history: dict[str, list[SessionEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(
        self,
        session_id: str | None = None,
        topics: Iterable[EventType] | None = None,
    ) -> Subscription:
        """Subscribe to events for a session.

        If there are buffered events for this session (events that were
        published before any subscriber connected), the ones matching the
        topic filter are delivered immediately to the new subscriber.

        Args:
            session_id: The session to subscribe to, or None for every session
            topics: Restrict delivery to these topics (all topics if None)

        Returns:
            A Subscription handle whose queue receives SessionEvent objects
        """
        key = session_id or ALL_SESSIONS
        subscription = Subscription(
            session_id=key,
            queue=asyncio.Queue(),
            topics=frozenset(topics) if topics is not None else None,
            _bus=self,
        )
        buffered_events: list[SessionEvent] = []

        with self._lock:
            self._subscribers[key].append(subscription)
            subscriber_count = len(self._subscribers[key])
            if key != ALL_SESSIONS and key in self._event_buffer:
                buffered_events = self._event_buffer.pop(key)

        for event in buffered_events:
            if subscription.accepts(event):
                subscription.queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            session_id=key,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription. No-op if it is already detached."""
        subscription.unsubscribe()

    def _remove(self, subscription: Subscription) -> None:
        key = subscription.session_id
        with self._lock:
            subscribers = self._subscribers.get(key)
            if not subscribers or subscription not in subscribers:
                logger.warning("unsubscribe_subscription_not_found", session_id=key)
                return
            subscribers.remove(subscription)
            subscriber_count = len(subscribers)
            if not subscribers:
                del self._subscribers[key]

        logger.info("subscriber_removed", session_id=key, subscriber_count=subscriber_count)

    async def publish(self, event: SessionEvent) -> None:
        """Publish an event to all subscribers for its session.

        Session subscribers and wildcard subscribers both receive the event,
        subject to their topic filters. If the session has no subscribers of
        its own, the event is buffered until one connects. All events except
        the close sentinel are stored in the session's history for replay.

        Args:
            event: The SessionEvent to publish
        """
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                history = self._event_history[event.session_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_SESSION:
                    self._event_history[event.session_id] = history[
                        -self.MAX_HISTORY_PER_SESSION :
                    ]

            session_subscribers = list(self._subscribers.get(event.session_id, []))
            wildcard_subscribers = list(self._subscribers.get(ALL_SESSIONS, []))

            if not session_subscribers and event.type != EventType.SESSION_CLOSED:
                self._event_buffer[event.session_id].append(event)
                logger.debug(
                    "event_buffered",
                    session_id=event.session_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.session_id]),
                )

        recipients = [
            sub for sub in session_subscribers + wildcard_subscribers if sub.accepts(event)
        ]
        # Publish with timeout to avoid blocking if a consumer stalls
        for subscription in recipients:
            try:
                await asyncio.wait_for(subscription.queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=event.session_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(recipients),
            agent_id=event.agent_id,
        )

    def get_event_history(self, session_id: str) -> list[SessionEvent]:
        """Get all stored events for a session, in chronological order.

        Used for replaying events to a newly connected WebSocket client.
        """
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Close a session and notify all of its subscribers.

        Puts a SESSION_CLOSED sentinel into each subscriber queue so that
        consumers can break out of their read loops, then detaches the
        subscribers and clears buffered events. History is preserved.

        Args:
            session_id: The session to close
        """
        with self._lock:
            subscriptions = self._subscribers.pop(session_id, [])
            buffer_count = len(self._event_buffer.pop(session_id, []))

        sentinel = SessionEvent(
            type=EventType.SESSION_CLOSED,
            session_id=session_id,
            data={"reason": "session_closed"},
        )
        for subscription in subscriptions:
            subscription._bus = None
            subscription.queue.put_nowait(sentinel)

        if subscriptions or buffer_count:
            logger.info(
                "session_closed",
                session_id=session_id,
                subscribers_removed=len(subscriptions),
                buffered_events_cleared=buffer_count,
            )
        else:
            logger.debug("close_session_not_found", session_id=session_id)

    def get_subscriber_count(self, session_id: str | None = None) -> int:
        """Get the number of subscribers for a session (or wildcard subscribers)."""
        with self._lock:
            return len(self._subscribers.get(session_id or ALL_SESSIONS, []))

    def get_active_sessions(self) -> list[str]:
        """Get list of sessions with active subscribers (excluding wildcards)."""
        with self._lock:
            return [key for key in self._subscribers if key != ALL_SESSIONS]

    def clear_event_history(self, session_id: str) -> None:
        """Clear stored event history for a session."""
        with self._lock:
            self._event_history.pop(session_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")

"""Event system for session observation.

This package provides the event infrastructure between the orchestration core
and its observers. The event system is an async pub/sub pattern over
asyncio.Queue with a closed, enumerated set of topics.

Key Components:
    - EventType: Enum of all topics in the system
    - SessionEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - Subscription: Handle returned by subscribe(), with unsubscribe()
    - SessionMetrics: Counters carried by metrics updates

Usage:
    >>> from events import EventType, SessionEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> subscription = bus.subscribe("sess_123")
    >>> await bus.publish(SessionEvent(
    ...     type=EventType.SESSION_STATE_CHANGE,
    ...     session_id="sess_123",
    ...     data={"previous": "idle", "current": "initializing"},
    ... ))
    >>> event = await subscription.get()
    >>> subscription.unsubscribe()
"""

from events.bus import (
    ALL_SESSIONS,
    EventBus,
    Subscription,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    SessionEvent,
    SessionMetrics,
)

__all__ = [
    # Event types
    "EventType",
    "SessionEvent",
    "SessionMetrics",
    # Event bus
    "ALL_SESSIONS",
    "EventBus",
    "Subscription",
    "get_event_bus",
    "reset_event_bus",
]

"""Tests for events/bus.py -- async pub/sub event bus.

Covers publish/subscribe, topic filtering, wildcard subscribers, buffering,
unsubscribe handles, the close_session sentinel, history replay and the
global singleton accessor.
"""

import asyncio

from events.bus import EventBus, Subscription, get_event_bus, reset_event_bus
from events.types import EventType, SessionEvent

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    session_id: str = "sess_test",
    event_type: EventType = EventType.SESSION_PROGRESS,
) -> SessionEvent:
    return SessionEvent(
        type=event_type,
        session_id=session_id,
        data={"type": "text", "payload": "hi"},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_subscribe_returns_handle(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1")
        assert isinstance(sub, Subscription)
        assert sub.active
        assert event_bus.get_subscriber_count("sess_1") == 1

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1")
        await event_bus.publish(_make_event("sess_1"))
        received = await asyncio.wait_for(sub.get(), timeout=1.0)
        assert received.type == EventType.SESSION_PROGRESS
        assert received.session_id == "sess_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        s1 = event_bus.subscribe("sess_1")
        s2 = event_bus.subscribe("sess_1")
        await event_bus.publish(_make_event("sess_1"))
        r1 = await asyncio.wait_for(s1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(s2.get(), timeout=1.0)
        assert r1 is r2

    async def test_publish_does_not_cross_sessions(self, event_bus: EventBus) -> None:
        s1 = event_bus.subscribe("sess_1")
        s2 = event_bus.subscribe("sess_2")
        await event_bus.publish(_make_event("sess_1"))
        assert s1.queue.qsize() == 1
        assert s2.queue.empty()

    async def test_events_arrive_in_publish_order(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1")
        for kind in (
            EventType.SESSION_STATE_CHANGE,
            EventType.SESSION_STARTED,
            EventType.SESSION_PROGRESS,
            EventType.SESSION_COMPLETE,
        ):
            await event_bus.publish(_make_event("sess_1", kind))
        received = [sub.queue.get_nowait().type for _ in range(4)]
        assert received == [
            EventType.SESSION_STATE_CHANGE,
            EventType.SESSION_STARTED,
            EventType.SESSION_PROGRESS,
            EventType.SESSION_COMPLETE,
        ]


# =========================================================================
# Topic filters and wildcards
# =========================================================================


class TestTopicsAndWildcards:
    """Topic filtering and subscribers for every session."""

    async def test_topic_filter(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1", topics=[EventType.SESSION_COMPLETE])
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_PROGRESS))
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_COMPLETE))
        assert sub.queue.qsize() == 1
        assert sub.queue.get_nowait().type == EventType.SESSION_COMPLETE

    async def test_wildcard_receives_every_session(self, event_bus: EventBus) -> None:
        wildcard = event_bus.subscribe()
        await event_bus.publish(_make_event("sess_1"))
        await event_bus.publish(_make_event("run_2", EventType.EXECUTION_STATE_CHANGE))
        sessions = [wildcard.queue.get_nowait().session_id for _ in range(2)]
        assert sessions == ["sess_1", "run_2"]
        assert event_bus.get_active_sessions() == []

    async def test_closed_sentinel_bypasses_topic_filter(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1", topics=[EventType.SESSION_COMPLETE])
        await event_bus.close_session("sess_1")
        assert sub.queue.get_nowait().type == EventType.SESSION_CLOSED


# =========================================================================
# Buffering
# =========================================================================


class TestBuffering:
    """Events published before any subscriber are delivered on subscribe."""

    async def test_buffered_events_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_STATE_CHANGE))
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_STARTED))

        sub = event_bus.subscribe("sess_1")
        assert [sub.queue.get_nowait().type for _ in range(2)] == [
            EventType.SESSION_STATE_CHANGE,
            EventType.SESSION_STARTED,
        ]

    async def test_buffer_drained_by_first_subscriber_only(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sess_1"))
        first = event_bus.subscribe("sess_1")
        second = event_bus.subscribe("sess_1")
        assert first.queue.qsize() == 1
        assert second.queue.empty()

    async def test_buffered_delivery_respects_topics(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_PROGRESS))
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_COMPLETE))
        sub = event_bus.subscribe("sess_1", topics=[EventType.SESSION_COMPLETE])
        assert sub.queue.qsize() == 1


# =========================================================================
# Unsubscribe / close
# =========================================================================


class TestUnsubscribeAndClose:
    """Unsubscribe handles and close_session teardown."""

    async def test_unsubscribe_stops_delivery(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1")
        sub.unsubscribe()
        other = event_bus.subscribe("sess_1")
        await event_bus.publish(_make_event("sess_1"))
        assert sub.queue.empty()
        assert other.queue.qsize() == 1
        assert not sub.active

    async def test_unsubscribe_twice_is_safe(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1")
        sub.unsubscribe()
        sub.unsubscribe()
        event_bus.unsubscribe(sub)
        assert event_bus.get_subscriber_count("sess_1") == 0

    async def test_close_session_ends_iteration(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("sess_1")
        await event_bus.publish(_make_event("sess_1"))
        await event_bus.close_session("sess_1")

        received = [event async for event in sub]
        assert [e.type for e in received] == [EventType.SESSION_PROGRESS]
        assert not sub.active
        assert event_bus.get_subscriber_count("sess_1") == 0

    async def test_close_session_keeps_history(self, event_bus: EventBus) -> None:
        event_bus.subscribe("sess_1")
        await event_bus.publish(_make_event("sess_1"))
        await event_bus.close_session("sess_1")
        history = event_bus.get_event_history("sess_1")
        assert [e.type for e in history] == [EventType.SESSION_PROGRESS]

    async def test_close_unknown_session_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_session("nope")
        assert event_bus.get_active_sessions() == []


# =========================================================================
# History
# =========================================================================


class TestHistory:
    """Replayable per-session history."""

    async def test_history_excludes_closed_sentinel(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sess_1"))
        await event_bus.publish(_make_event("sess_1", EventType.SESSION_CLOSED))
        assert len(event_bus.get_event_history("sess_1")) == 1

    async def test_history_is_capped(self, event_bus: EventBus) -> None:
        event_bus.MAX_HISTORY_PER_SESSION = 3
        for _ in range(5):
            await event_bus.publish(_make_event("sess_1"))
        assert len(event_bus.get_event_history("sess_1")) == 3

    async def test_clear_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sess_1"))
        event_bus.clear_event_history("sess_1")
        assert event_bus.get_event_history("sess_1") == []


# =========================================================================
# Global singleton
# =========================================================================


class TestGlobalEventBus:
    """get_event_bus / reset_event_bus."""

    def test_singleton(self) -> None:
        reset_event_bus()
        assert get_event_bus() is get_event_bus()

    def test_reset_creates_new_instance(self) -> None:
        reset_event_bus()
        first = get_event_bus()
        reset_event_bus()
        assert get_event_bus() is not first

"""Tests for the event bus."""

import pytest

from aether.automation.event_bus import EventBus


class TestSubscribe:
    """Tests for subscription bookkeeping."""

    def test_unsubscribe_unknown_returns_false(self, bus):
        """Unknown listener id is not an error."""
        assert bus.unsubscribe("x", "nope") is False

    def test_unsubscribe_removes_empty_bucket(self, bus):
        """Last listener gone → event type is forgotten."""
        lid = bus.subscribe("x", lambda e: None)
        assert bus.get_stats()["event_types"] == 1

        assert bus.unsubscribe("x", lid) is True
        stats = bus.get_stats()
        assert stats["event_types"] == 0
        assert stats["active_listeners"] == 0

    def test_explicit_listener_id(self, bus):
        """Caller may choose the listener id."""
        assert bus.subscribe("x", lambda e: None, listener_id="mine") == "mine"
        assert bus.listener_ids("x") == ["mine"]


class TestPublish:
    """Tests for publish semantics."""

    async def test_priority_order_is_stable(self, bus):
        """Higher priority first, equal priority keeps subscription order."""
        calls = []
        bus.subscribe("x", lambda e: calls.append("low"), priority=0)
        bus.subscribe("x", lambda e: calls.append("high-1"), priority=10)
        bus.subscribe("x", lambda e: calls.append("high-2"), priority=10)

        await bus.publish("x")

        assert calls == ["high-1", "high-2", "low"]

    async def test_async_handlers_are_awaited(self, bus):
        """publish returns only after coroutine handlers finished."""
        seen = []

        async def handler(event):
            seen.append(event.data["n"])

        bus.subscribe("x", handler)
        await bus.publish("x", {"n": 1})

        assert seen == [1]

    async def test_once_listener_removed_before_invocation(self, bus):
        """Once-listener republishing the same event is not called again."""
        calls = []

        async def handler(event):
            calls.append(event.data.get("depth", 0))
            if len(calls) < 3:
                await bus.publish("x", {"depth": len(calls)})

        bus.once("x", handler)
        await bus.publish("x")

        assert calls == [0]
        assert bus.listener_ids("x") == []

    async def test_once_listener_removed_even_if_it_fails(self, bus):
        """Failed once-listener is still gone."""

        def boom(event):
            raise RuntimeError("boom")

        bus.once("x", boom)
        await bus.publish("x")

        assert bus.listener_ids("x") == []
        assert bus.get_stats()["errors"] == 1

    async def test_handler_error_does_not_stop_others(self, bus, recorder):
        """Remaining listeners still receive the event."""

        def boom(event):
            raise ValueError("bad handler")

        bus.subscribe("x", boom, priority=5)
        bus.subscribe("x", recorder)

        await bus.publish("x", {"a": 1})

        assert recorder.data == [{"a": 1}]
        stats = bus.get_stats()
        assert stats["errors"] == 1
        assert stats["events_emitted"] == 1
        assert stats["events_processed"] == 1

    async def test_subscription_during_publish_applies_to_next_event(self, bus, recorder):
        """Listener added by a handler misses the current event."""

        def adder(event):
            bus.subscribe("x", recorder)

        bus.once("x", adder)
        await bus.publish("x", {"n": 1})
        await bus.publish("x", {"n": 2})

        assert recorder.data == [{"n": 2}]

    async def test_publish_without_listeners(self, bus):
        """Event is still recorded and returned."""
        event = await bus.publish("nobody", {"k": "v"})

        assert event.name == "nobody"
        assert event.data == {"k": "v"}
        assert bus.get_history(1) == [event]


class TestHistory:
    """Tests for the bounded event history."""

    async def test_newest_first_and_bounded(self):
        """Only the last history_limit events are kept."""
        bus = EventBus(history_limit=3)
        for i in range(5):
            await bus.publish(f"e{i}")

        assert [e.name for e in bus.get_history()] == ["e4", "e3", "e2"]
        assert [e.name for e in bus.get_history(limit=1)] == ["e4"]

    @pytest.mark.parametrize("limit", [0, -5])
    async def test_non_positive_limit(self, bus, limit):
        """Non-positive limit gives an empty list."""
        await bus.publish("x")
        assert bus.get_history(limit) == []

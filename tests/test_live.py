"""
Tests for live queries and the trigger gate.
"""

import pytest

from conftest import make_event

from hypernote.cache import QueryCache
from hypernote.document import QuerySpec
from hypernote.live import LiveQuery, TriggerGate
from hypernote.observability import EngineMetrics
from hypernote.subscriptions import SubscriptionManager
from hypernote.transports import InMemoryTransport


def make_live(transport, spec, filter_, events=None, value=None, cache=None):
    cache = cache or QueryCache(transport.fetch)
    queue = []
    events = events or []
    live = LiveQuery(
        "$q",
        QuerySpec.model_validate(spec),
        filter_,
        cache,
        SubscriptionManager(transport),
        enqueue=lambda query, event: queue.append(event),
        events=events,
        value=list(events) if value is None else value,
        metrics=EngineMetrics(),
    )
    return live, queue


class TestTriggerGate:
    """Tests for TriggerGate."""

    def test_fires_on_first_non_empty(self):
        gate = TriggerGate()

        assert gate.should_fire(1)

    @pytest.mark.parametrize("value", [0, [], None, "", {}])
    def test_empty_never_fires(self, value):
        assert not TriggerGate().should_fire(value)

    def test_unchanged_value_does_not_fire(self):
        gate = TriggerGate()
        gate.should_fire(2)

        assert not gate.should_fire(2)
        assert gate.should_fire(3)

    def test_empty_rearms(self):
        gate = TriggerGate()
        gate.should_fire(1)
        gate.should_fire(0)

        assert gate.should_fire(1)


class TestLiveQuery:
    """Tests for LiveQuery update handling."""

    @pytest.mark.asyncio
    async def test_piped_count_goes_zero_to_one(self):
        transport = InMemoryTransport()
        live, _ = make_live(
            transport,
            {"kinds": [7], "pipe": ["count"], "triggers": "@celebrate"},
            {"kinds": [7]},
            value=0,
        )
        reaction = make_event(kind=7, content="+")
        transport.add_events(reaction)

        update = await live.handle_event(reaction)

        assert update.value == 1
        assert update.fire_trigger
        assert await live.handle_event(reaction) is None
        assert live.value == 1

    @pytest.mark.asyncio
    async def test_piped_event_missing_from_refetch_is_included(self):
        transport = InMemoryTransport()
        live, _ = make_live(transport, {"kinds": [7], "pipe": ["count"]}, {"kinds": [7]}, value=0)

        update = await live.handle_event(make_event(kind=7))

        assert update.value == 1
        assert not update.fire_trigger

    @pytest.mark.asyncio
    async def test_piped_queries_share_one_refetch(self):
        transport = InMemoryTransport()
        cache = QueryCache(transport.fetch)
        cache.set({"kinds": [7]}, [])
        queries = [
            make_live(transport, {"kinds": [7], "pipe": ["count"]}, {"kinds": [7]}, value=0, cache=cache)[0]
            for _ in range(3)
        ]
        reaction = make_event(kind=7)
        transport.add_events(reaction)

        updates = [await live.handle_event(reaction) for live in queries]

        assert [update.value for update in updates] == [1, 1, 1]
        assert transport.fetch_count == 1

    @pytest.mark.asyncio
    async def test_piped_unchanged_value_is_not_propagated(self):
        transport = InMemoryTransport()
        existing = make_event(kind=1, pubkey="b" * 64, content="first")
        transport.add_events(existing)
        live, _ = make_live(
            transport,
            {"kinds": [1], "pipe": [{"op": "pluck", "field": "pubkey"}, "unique", "count"]},
            {"kinds": [1]},
            events=[existing],
            value=1,
        )
        same_author = make_event(kind=1, pubkey="b" * 64, content="second")
        transport.add_events(same_author)

        assert await live.handle_event(same_author) is None

    @pytest.mark.asyncio
    async def test_unpiped_event_is_prepended(self):
        transport = InMemoryTransport()
        cache = QueryCache(transport.fetch)
        old = make_event(content="old")
        cache.set({"kinds": [1]}, [old])
        live, _ = make_live(transport, {"kinds": [1], "triggers": "@log"}, {"kinds": [1]}, events=[old], cache=cache)
        new = make_event(content="new")

        update = await live.handle_event(new)

        assert [event["content"] for event in update.value] == ["new", "old"]
        assert update.fire_trigger
        assert [event["content"] for event in cache.peek({"kinds": [1]})] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_initial_events_count_as_seen(self):
        transport = InMemoryTransport()
        old = make_event(content="old")
        live, _ = make_live(transport, {"kinds": [1]}, {"kinds": [1]}, events=[old])

        assert await live.handle_event(dict(old)) is None

    @pytest.mark.asyncio
    async def test_subscription_enqueues_events(self):
        transport = InMemoryTransport()
        live, queue = make_live(transport, {"kinds": [1]}, {"kinds": [1]})
        await live.start()

        transport.emit(make_event())
        transport.emit(make_event(kind=2))

        assert live.active
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_close_stops_delivery(self):
        transport = InMemoryTransport()
        live, queue = make_live(transport, {"kinds": [1]}, {"kinds": [1]})
        await live.start()

        live.close()
        transport.emit(make_event())

        assert queue == []
        assert transport.active_subscriptions == 0
        assert await live.handle_event(make_event()) is None

    @pytest.mark.asyncio
    async def test_reset_adopts_new_baseline(self):
        transport = InMemoryTransport()
        first = make_event(content="first")
        live, _ = make_live(transport, {"kinds": [1]}, {"kinds": [1]})

        live.reset([first], [first])

        assert live.value == [first]
        assert await live.handle_event(first) is None

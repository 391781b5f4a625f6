"""
End-to-end tests for HypernoteEngine and DocumentScope.

These run whole documents against the in-memory transport: initial
resolution, live updates, triggered actions and nested component scopes.
"""

import asyncio
import json

import pytest

from conftest import ALICE, BOB, USER, make_event

from hypernote.engine import HypernoteEngine
from hypernote.errors import CycleError

CONTACTS_PIPE = [{"op": "first"}, {"op": "get", "field": "tags"}, {"op": "pluckIndex", "index": 1}]

UNIQUE_REACTORS = [{"op": "pluck", "field": "pubkey"}, "unique", "count"]


def reaction(pubkey, content="+", created_at=1_767_225_100):
    return make_event(kind=7, pubkey=pubkey, content=content, created_at=created_at)


# =============================================================================
# One-shot resolution
# =============================================================================


class TestRunAll:
    """Tests for HypernoteEngine.run_all."""

    @pytest.mark.asyncio
    async def test_contacts_scenario(self, engine, transport, contact_list):
        transport.add_events(contact_list)
        document = {"queries": {"$contacts": {"kinds": [3], "authors": ["user.pubkey"], "pipe": CONTACTS_PIPE}}}

        result = await engine.run_all(document, user_pubkey=USER, live=False)

        assert result.query_results["$contacts"] == ["abc", "def"]
        assert result.extracted_variables == {"user.pubkey": USER}
        assert result.scope is None
        assert engine.stats()["scopes"] == 0

    @pytest.mark.asyncio
    async def test_feed_of_contacts(self, engine, transport, contact_list):
        transport.add_events(contact_list, make_event(pubkey="abc", content="from abc"), make_event(pubkey="zzz"))
        document = {
            "queries": {
                "feed": {"kinds": [1], "authors": ["$contacts"], "limit": 20},
                "contacts": {"kinds": [3], "authors": ["user.pubkey"], "pipe": CONTACTS_PIPE},
            }
        }

        result = await engine.run_all(document, user_pubkey=USER, live=False)

        assert [event["content"] for event in result.query_results["$feed"]] == ["from abc"]

    @pytest.mark.asyncio
    async def test_pending_without_user(self, engine):
        document = {"queries": {"$mine": {"kinds": [1], "authors": ["user.pubkey"]}}}

        result = await engine.run_all(document, live=False)

        assert result.pending == ["$mine"]
        assert result.query_results["$mine"] == []

    @pytest.mark.asyncio
    async def test_cycle_raises_and_closes_scope(self, engine):
        document = {"queries": {"$a": {"authors": ["$b"]}, "$b": {"authors": ["$a"]}}}

        with pytest.raises(CycleError):
            await engine.run_all(document, live=True)

        assert engine.stats()["scopes"] == 0

    @pytest.mark.asyncio
    async def test_execute_query(self, engine, transport, contact_list):
        transport.add_events(contact_list)
        document = {"queries": {"$contacts": {"kinds": [3], "authors": ["user.pubkey"], "pipe": CONTACTS_PIPE}}}

        value = await engine.execute_query(document, "contacts", user_pubkey=USER)

        assert value == ["abc", "def"]

    @pytest.mark.asyncio
    async def test_scopes_share_cache(self, engine, transport):
        transport.add_events(make_event())
        document = {"queries": {"$feed": {"kinds": [1]}}}

        await asyncio.gather(
            engine.run_all(document, live=False),
            engine.run_all(document, live=False),
        )

        assert transport.fetch_count == 1


# =============================================================================
# Live updates
# =============================================================================


class TestLiveUpdates:
    """Tests for live scopes."""

    @pytest.mark.asyncio
    async def test_new_event_reaches_callback(self, engine, transport):
        updates = []
        document = {"queries": {"$feed": {"kinds": [1]}}}

        async with engine.open_scope(document, on_update=updates.append) as scope:
            await scope.run_all()
            event = make_event(content="live")
            transport.emit(event)
            transport.emit(event)
            await scope.drain()

        assert len(updates) == 1
        assert [item["content"] for item in updates[0]["$feed"]] == ["live"]
        assert engine.metrics.duplicates_suppressed == 1

    @pytest.mark.asyncio
    async def test_async_callback(self, engine, transport):
        updates = []

        async def on_update(changed):
            await asyncio.sleep(0)
            updates.append(changed)

        async with engine.open_scope({"queries": {"$feed": {"kinds": [1]}}}, on_update=on_update) as scope:
            await scope.run_all()
            transport.emit(make_event())
            await scope.drain()

        assert len(updates) == 1

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_scope_alive(self, engine, transport):
        calls = []

        def on_update(changed):
            calls.append(changed)
            raise RuntimeError("render failed")

        async with engine.open_scope({"queries": {"$feed": {"kinds": [1]}}}, on_update=on_update) as scope:
            await scope.run_all()
            transport.emit(make_event(content="one"))
            transport.emit(make_event(content="two"))
            await scope.drain()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_dependent_query_is_refreshed(self, engine, transport, contact_list):
        transport.add_events(contact_list)
        updates = []
        document = {
            "queries": {
                "$contacts": {"kinds": [3], "authors": ["user.pubkey"], "pipe": CONTACTS_PIPE},
                "$feed": {"kinds": [1], "authors": ["$contacts"]},
            }
        }

        async with engine.open_scope(document, user_pubkey=USER, on_update=updates.append) as scope:
            await scope.run_all()
            transport.emit(
                make_event(kind=3, tags=[["p", "abc"], ["p", "def"], ["p", "ghi"]], created_at=1_767_225_500)
            )
            await scope.drain()

            assert updates[-1]["$contacts"] == ["abc", "def", "ghi"]
            assert transport.fetch_calls[-1] == {"kinds": [1], "authors": ["abc", "def", "ghi"]}
            assert scope.live_queries["$feed"].filter["authors"] == ["abc", "def", "ghi"]

    @pytest.mark.asyncio
    async def test_close_stops_updates(self, engine, transport):
        updates = []
        scope = engine.open_scope({"queries": {"$feed": {"kinds": [1]}}}, on_update=updates.append)
        await scope.run_all()

        await scope.close()
        transport.emit(make_event())
        await asyncio.sleep(0.01)

        assert updates == []
        assert scope.closed
        assert transport.active_subscriptions == 0
        with pytest.raises(RuntimeError):
            await scope.run_all()

    @pytest.mark.asyncio
    async def test_subscription_shared_between_scopes(self, engine, transport):
        document = {"queries": {"$feed": {"kinds": [1]}}}
        first = engine.open_scope(document)
        second = engine.open_scope(document)
        await first.run_all()
        await second.run_all()

        assert len(transport.subscribe_calls) == 1
        await first.close()
        assert transport.active_subscriptions == 1
        await second.close()
        assert transport.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_piped_refetch_shared_between_scopes(self, engine, transport):
        document = {"queries": {"$count": {"kinds": [7], "pipe": ["count"]}}}
        scopes = [engine.open_scope(document) for _ in range(5)]
        for scope in scopes:
            await scope.run_all()
        fetches_before = transport.fetch_count

        transport.emit(reaction(ALICE))
        for scope in scopes:
            await scope.drain()

        assert transport.fetch_count - fetches_before == 1
        assert [scope.context.get_query_result("$count") for scope in scopes] == [1] * 5
        for scope in scopes:
            await scope.close()

    @pytest.mark.asyncio
    async def test_snapshot_reflects_live_update(self, engine, transport):
        async with engine.open_scope({"queries": {"$count": {"kinds": [7], "pipe": ["count"]}}}) as scope:
            await scope.run_all()
            transport.emit(reaction(ALICE))
            await scope.drain()

            snapshot = scope.executor.snapshot()
            assert snapshot.query_results["$count"] == 1
            assert [event["pubkey"] for event in scope.executor.outcome("$count").events] == [ALICE]

    @pytest.mark.asyncio
    async def test_query_falling_back_to_pending_stops_listening(self, engine, transport):
        updates = []
        document = {"queries": {"$mine": {"kinds": [1], "authors": ["user.pubkey"]}}}

        async with engine.open_scope(document, user_pubkey=USER, on_update=updates.append) as scope:
            await scope.run_all()
            assert "$mine" in scope.live_queries

            scope.context.user_pubkey = None
            result = await scope.executor.refresh(["$mine"])
            transport.emit(make_event(pubkey=USER))
            await scope.drain()

            assert result.pending == ["$mine"]
            assert "$mine" not in scope.live_queries
            assert transport.active_subscriptions == 0
            assert updates == []


# =============================================================================
# Triggers and actions
# =============================================================================


class TestTriggers:
    """Tests for query-triggered and user-invoked actions."""

    @pytest.mark.asyncio
    async def test_count_trigger_scenario(self, engine, transport):
        document = {
            "queries": {"$count": {"kinds": [7], "pipe": UNIQUE_REACTORS, "triggers": "@notify"}},
            "events": {"@notify": {"kind": 1, "content": "reactors: {$count}"}},
        }

        async with engine.open_scope(document, user_pubkey=USER) as scope:
            result = await scope.run_all()
            assert result.query_results["$count"] == 0
            assert result.triggered == []

            transport.emit(reaction(ALICE))
            await scope.drain()
            transport.emit(reaction(ALICE, content="again"))
            await scope.drain()
            transport.emit(reaction(BOB))
            await scope.drain()

        assert [record["content"] for record in transport.published] == ["reactors: 1", "reactors: 2"]
        assert [action.action for action in scope.triggered] == ["@notify", "@notify"]

    @pytest.mark.asyncio
    async def test_initial_trigger_fires_once(self, engine, transport):
        transport.add_events(reaction(ALICE))
        document = {
            "queries": {"$count": {"kinds": [7], "pipe": ["count"], "triggers": "@notify"}},
            "events": {"@notify": {"kind": 1, "content": "seen"}},
        }

        result = await engine.run_all(document, user_pubkey=USER, live=False)

        assert [action.action for action in result.triggered] == ["@notify"]
        assert len(transport.published) == 1

    @pytest.mark.asyncio
    async def test_increment_triggers_log(self, engine, transport):
        document = {
            "events": {
                "@increment": {"kind": 1, "content": "inc", "triggers": "@log"},
                "@log": {"kind": 1, "content": "log"},
            }
        }

        async with engine.open_scope(document, user_pubkey=USER, live=False) as scope:
            result = await scope.execute_action("increment")

        assert result.success
        assert [chained.action for chained in result.chained] == ["@log"]
        assert len(transport.published) == 2

    @pytest.mark.asyncio
    async def test_publish_unblocks_pending_query(self, engine, transport):
        updates = []
        document = {
            "queries": {"$replies": {"kinds": [1], "#e": ["@post"]}},
            "events": {"@post": {"kind": 1, "content": "{form.text}"}},
        }

        async with engine.open_scope(document, user_pubkey=USER, on_update=updates.append, live=False) as scope:
            first = await scope.run_all()
            result = await scope.execute_action("post", {"text": "hello"})

            assert first.pending == ["$replies"]
            assert scope.executor.pending == []
            assert scope.executor.outcome("$replies").resolved_filter == {"kinds": [1], "#e": [result.record_id]}
            assert "$replies" in updates[-1]

    @pytest.mark.asyncio
    async def test_no_signer(self, transport, settings, clock):
        engine = HypernoteEngine(transport, settings=settings, clock=clock)
        document = {"events": {"@post": {"kind": 1, "content": "x"}}}

        async with engine.open_scope(document, live=False) as scope:
            result = await scope.execute_action("post")

        assert result.reason == "no_signer"

    @pytest.mark.asyncio
    async def test_closed_scope_does_not_publish(self, engine, transport):
        scope = engine.open_scope({"events": {"@post": {"kind": 1, "content": "x"}}}, user_pubkey=USER, live=False)
        await scope.close()

        result = await scope.execute_action("post")

        assert not result.success
        assert result.reason == "scope_closed"
        assert result.action == "@post"
        assert transport.published == []


# =============================================================================
# Nested scopes and batching
# =============================================================================


class TestNestedScopes:
    """Tests for component scopes."""

    @pytest.mark.asyncio
    async def test_derive_resolves_profile_target(self, engine, transport):
        transport.add_events(
            make_event(kind=0, pubkey=ALICE, content=json.dumps({"name": "alice"})),
            make_event(kind=1, pubkey=ALICE, content="by alice"),
            make_event(kind=1, pubkey=BOB, content="by bob"),
        )
        card = {"component_kind": 0, "queries": {"$notes": {"kinds": [1], "authors": ["target.pubkey"]}}}

        async with engine.open_scope({"queries": {}}, user_pubkey=USER, live=False) as scope:
            child = await scope.derive(ALICE, card)
            result = await child.run_all()

            assert child.context.target["name"] == "alice"
            assert scope.context.target is None
            assert [event["content"] for event in result.query_results["$notes"]] == ["by alice"]

        assert child.closed

    @pytest.mark.asyncio
    async def test_batched_scopes_share_one_fetch(self, engine, transport):
        authors = [f"{index:064x}" for index in range(20)]
        transport.add_events(*(make_event(kind=1, pubkey=author, content=author) for author in authors))
        card = {"component_kind": 0, "queries": {"$notes": {"kinds": [1], "authors": ["target.pubkey"]}}}

        scopes = [
            engine.open_scope(card, target={"pubkey": author}, live=False, batched=True)
            for author in authors
        ]
        results = await asyncio.gather(*(scope.run_all() for scope in scopes))

        assert transport.fetch_count == 1
        for author, result in zip(authors, results):
            assert [event["content"] for event in result.query_results["$notes"]] == [author]
        await engine.close()

    @pytest.mark.asyncio
    async def test_add_query_mid_session(self, engine, transport, contact_list):
        transport.add_events(contact_list, make_event(pubkey="def", content="from def"))
        document = {"queries": {"$contacts": {"kinds": [3], "authors": ["user.pubkey"], "pipe": CONTACTS_PIPE}}}

        async with engine.open_scope(document, user_pubkey=USER, live=False) as scope:
            await scope.run_all()
            value = await scope.add_query("feed", {"kinds": [1], "authors": ["$contacts"]})

        assert [event["content"] for event in value] == ["from def"]

    @pytest.mark.asyncio
    async def test_engine_close(self, engine):
        scope = engine.open_scope({"queries": {"$feed": {"kinds": [1]}}})
        await scope.run_all()

        await engine.close()

        assert scope.closed
        assert engine.stats()["subscriptions"] == 0

"""
Tests for the target batcher and component target parsing.
"""

import asyncio
import json

import pytest

from conftest import ALICE, BOB, make_event

from hypernote.planner import TargetBatcher, TargetContext, parse_target
from hypernote.transports import InMemoryTransport


def profile(pubkey, created_at=1_767_225_000, **metadata):
    return make_event(kind=0, pubkey=pubkey, content=json.dumps(metadata), created_at=created_at)


class TestTargetBatcher:
    """Tests for tick-batched profile and record lookups."""

    @pytest.mark.asyncio
    async def test_same_tick_lookups_share_one_fetch(self):
        transport = InMemoryTransport(events=[profile(ALICE, name="alice"), profile(BOB, display_name="bob")])
        batcher = TargetBatcher(transport.fetch)

        alice, bob = await asyncio.gather(batcher.get_profile(ALICE), batcher.get_profile(BOB))

        assert transport.fetch_calls == [{"kinds": [0], "authors": [ALICE, BOB]}]
        assert alice.name == "alice"
        assert bob.name == "bob"

    @pytest.mark.asyncio
    async def test_cached_target_needs_no_fetch(self):
        transport = InMemoryTransport(events=[profile(ALICE, name="alice")])
        batcher = TargetBatcher(transport.fetch)

        await batcher.get_profile(ALICE)
        await batcher.get_profile(ALICE)

        assert transport.fetch_count == 1
        assert batcher.stats()["profiles_cached"] == 1

    @pytest.mark.asyncio
    async def test_latest_profile_wins(self):
        transport = InMemoryTransport(
            events=[profile(ALICE, created_at=100, name="old"), profile(ALICE, created_at=200, name="new")]
        )
        batcher = TargetBatcher(transport.fetch)

        assert (await batcher.get_profile(ALICE)).name == "new"

    @pytest.mark.asyncio
    async def test_malformed_profile_gives_minimal_target(self):
        transport = InMemoryTransport(events=[make_event(kind=0, pubkey=ALICE, content="not json")])
        batcher = TargetBatcher(transport.fetch)

        target = await batcher.get_profile(ALICE)

        assert target.to_dict() == {"raw": ALICE, "pubkey": ALICE}

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self):
        transport = InMemoryTransport(fetch_error=ConnectionError("relay down"))
        batcher = TargetBatcher(transport.fetch)

        target = await batcher.get_profile(ALICE)
        transport.fetch_error = None
        await batcher.get_profile(ALICE)

        assert target == TargetContext(raw=ALICE, pubkey=ALICE)
        assert transport.fetch_count == 2

    @pytest.mark.asyncio
    async def test_record_lookup(self):
        note = make_event(kind=1, pubkey=ALICE, content="hello", tags=[["t", "x"]])
        transport = InMemoryTransport(events=[note])
        batcher = TargetBatcher(transport.fetch)

        target = await batcher.get_record(note["id"])

        assert transport.fetch_calls == [{"ids": [note["id"]]}]
        assert target.pubkey == ALICE
        assert target.content == "hello"
        assert target.tags == [["t", "x"]]


class TestParseTarget:
    """Tests for parse_target."""

    @pytest.mark.asyncio
    async def test_profile_without_batcher(self):
        assert await parse_target(ALICE, 0) == {"pubkey": ALICE, "raw": ALICE}

    @pytest.mark.asyncio
    async def test_record_id_without_batcher(self):
        assert await parse_target(BOB, 1) == {"id": BOB, "raw": BOB}

    @pytest.mark.asyncio
    async def test_non_hex_is_kept_raw(self):
        assert await parse_target("npub1xyz", 1) == {"raw": "npub1xyz"}
        assert await parse_target("npub1xyz", 0) == {"pubkey": "npub1xyz", "raw": "npub1xyz"}

    @pytest.mark.asyncio
    async def test_dict_passes_through(self):
        assert await parse_target({"pubkey": ALICE, "name": "alice"}, 0) == {"pubkey": ALICE, "name": "alice"}

    @pytest.mark.asyncio
    async def test_looked_up_with_batcher(self):
        transport = InMemoryTransport(events=[profile(ALICE, name="alice", picture="https://img")])
        batcher = TargetBatcher(transport.fetch)

        target = await parse_target(ALICE, 0, batcher)

        assert target["name"] == "alice"
        assert target["picture"] == "https://img"
        assert target["kind"] == 0

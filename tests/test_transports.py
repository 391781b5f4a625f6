"""
Tests for filter matching and the in-memory transport doubles.
"""

import pytest

from conftest import ALICE, USER, make_event

from hypernote.filters import canonical_filter_key, matches_filter, references_value, stable_hash
from hypernote.transports import InMemorySigner, InMemoryTransport, Transport, compute_record_id

# =============================================================================
# Filters
# =============================================================================


class TestFilters:
    """Tests for canonical keys and matching."""

    def test_key_ignores_insertion_order(self):
        assert canonical_filter_key({"kinds": [1], "limit": 5}) == canonical_filter_key({"limit": 5, "kinds": [1]})

    def test_stable_hash(self):
        assert stable_hash({"a": [1, 2]}) == stable_hash({"a": [1, 2]})
        assert stable_hash([1, 2]) != stable_hash([2, 1])

    def test_matches_kinds_authors_and_time(self):
        event = make_event(kind=1, pubkey=ALICE, created_at=100)

        assert matches_filter(event, {"kinds": [1], "authors": [ALICE], "since": 50, "until": 100})
        assert not matches_filter(event, {"kinds": [2]})
        assert not matches_filter(event, {"authors": [USER]})
        assert not matches_filter(event, {"since": 101})

    def test_matches_tags(self):
        event = make_event(tags=[["e", "root"], ["p", ALICE]])

        assert matches_filter(event, {"#e": ["root"], "#p": [ALICE, USER]})
        assert not matches_filter(event, {"#e": ["other"]})

    def test_limit_and_search_are_ignored(self):
        assert matches_filter(make_event(), {"limit": 0, "search": "anything"})

    def test_references_value(self):
        assert references_value({"#e": ["abc"], "kinds": [1]}, "abc")
        assert not references_value({"#e": ["abcd"]}, "abc")


# =============================================================================
# In-memory transport
# =============================================================================


class TestInMemoryTransport:
    """Tests for InMemoryTransport."""

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryTransport(), Transport)

    @pytest.mark.asyncio
    async def test_fetch_newest_first_with_limit(self):
        transport = InMemoryTransport(
            events=[make_event(content=str(index), created_at=100 + index) for index in range(5)]
        )

        events = await transport.fetch({"kinds": [1], "limit": 2})

        assert [event["content"] for event in events] == ["4", "3"]
        assert transport.fetch_count == 1

    @pytest.mark.asyncio
    async def test_fetch_error(self):
        transport = InMemoryTransport(fetch_error=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            await transport.fetch({"kinds": [1]})

    @pytest.mark.asyncio
    async def test_live_subscription(self):
        transport = InMemoryTransport()
        received, eose = [], []

        cancel = await transport.subscribe_live({"kinds": [1]}, received.append, lambda: eose.append(True))
        assert transport.emit(make_event()) == 1
        cancel()
        assert transport.emit(make_event(content="late")) == 0

        assert len(received) == 1
        assert eose == [True]

    @pytest.mark.asyncio
    async def test_publish_echoes_to_subscribers(self):
        transport = InMemoryTransport()
        received = []
        await transport.subscribe_live({"kinds": [1]}, received.append)
        record = await InMemorySigner(pubkey=USER).sign({"kind": 1, "content": "hi", "tags": [], "created_at": 1})

        result = await transport.publish(record)

        assert result.id == record["id"]
        assert result.success_count == 1
        assert received[0]["id"] == record["id"]
        assert await transport.fetch({"ids": [record["id"]]}) == [record]


class TestInMemorySigner:
    """Tests for InMemorySigner."""

    @pytest.mark.asyncio
    async def test_fills_pubkey_and_id(self):
        signer = InMemorySigner(pubkey=USER)

        record = await signer.sign({"kind": 1, "content": "x", "tags": [], "created_at": 5, "pubkey": ""})

        assert record["pubkey"] == USER
        assert record["id"] == compute_record_id(record)
        assert signer.signed == [record]

    @pytest.mark.asyncio
    async def test_rejection(self):
        with pytest.raises(PermissionError):
            await InMemorySigner(fail=True).sign({"kind": 1})

"""
Reaction Counter Example

This example demonstrates live updates and triggered actions:
1. Count the distinct users reacting to a note
2. Keep the count live while reactions arrive
3. Publish a notice whenever the count changes

Run: python -m examples.02-reaction-counter.main
"""

import asyncio
import logging
import time

from hypernote import HypernoteEngine, InMemorySigner, InMemoryTransport
from hypernote.transports import compute_record_id

ME = "a" * 64
NOTE_ID = "e" * 64


def reaction(pubkey: str, content: str = "+") -> dict:
    record = {
        "pubkey": pubkey,
        "kind": 7,
        "content": content,
        "tags": [["e", NOTE_ID]],
        "created_at": int(time.time()),
    }
    record["id"] = compute_record_id(record)
    return record


# =============================================================================
# Document
# =============================================================================

DOCUMENT = {
    "queries": {
        "$reactors": {
            "kinds": [7],
            "#e": [NOTE_ID],
            "pipe": [{"op": "pluck", "field": "pubkey"}, "unique", "count"],
            "triggers": "@announce",
        },
    },
    "events": {
        "@announce": {
            "kind": 1,
            "content": "{$reactors} people reacted",
            "tags": [["e", NOTE_ID]],
        },
    },
}


# =============================================================================
# Main
# =============================================================================


def on_update(changed: dict) -> None:
    for name, value in changed.items():
        print(f"update: {name} = {value}")


async def main():
    logging.basicConfig(level=logging.WARNING)

    transport = InMemoryTransport()
    engine = HypernoteEngine(transport, signer=InMemorySigner(pubkey=ME))

    async with engine.open_scope(DOCUMENT, user_pubkey=ME, on_update=on_update) as scope:
        result = await scope.run_all()
        print(f"initial: $reactors = {result.query_results['$reactors']}")

        for pubkey in ("b" * 64, "b" * 64, "c" * 64):
            transport.emit(reaction(pubkey, content=f"+{time.perf_counter_ns()}"))
            await scope.drain()

    print()
    for record in transport.published:
        print(f"published: {record['content']}")
    print(f"engine stats: {engine.stats()['live']}")


if __name__ == "__main__":
    asyncio.run(main())

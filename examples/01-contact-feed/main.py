"""
Contact Feed Example

This example demonstrates dependent queries:
1. Load the viewing user's contact list
2. Feed every note written by those contacts
3. Print the resolved filters and results

Run: python -m examples.01-contact-feed.main
"""

import asyncio
import time

from hypernote import HypernoteEngine, InMemorySigner, InMemoryTransport
from hypernote.transports import compute_record_id

ME = "a" * 64
ALICE = "b" * 64
BOB = "c" * 64


def event(kind: int, pubkey: str, content: str = "", tags: list | None = None) -> dict:
    record = {
        "pubkey": pubkey,
        "kind": kind,
        "content": content,
        "tags": tags or [],
        "created_at": int(time.time()),
    }
    record["id"] = compute_record_id(record)
    return record


# =============================================================================
# Document
# =============================================================================

DOCUMENT = {
    "queries": {
        "$contacts": {
            "kinds": [3],
            "authors": ["user.pubkey"],
            "limit": 1,
            "pipe": ["first", {"op": "get", "field": "tags"}, {"op": "pluckIndex", "index": 1}],
        },
        "$feed": {
            "kinds": [1],
            "authors": ["$contacts"],
            "limit": 20,
        },
    },
}


# =============================================================================
# Main
# =============================================================================


async def main():
    transport = InMemoryTransport(
        events=[
            event(3, ME, tags=[["p", ALICE], ["p", BOB]]),
            event(1, ALICE, "gm from alice"),
            event(1, BOB, "gm from bob"),
            event(1, "d" * 64, "not a contact"),
        ]
    )
    engine = HypernoteEngine(transport, signer=InMemorySigner(pubkey=ME))

    result = await engine.run_all(DOCUMENT, user_pubkey=ME, live=False)

    print(f"Contacts: {len(result.query_results['$contacts'])}")
    print(f"Pending: {result.pending}")
    print()
    for note in result.query_results["$feed"]:
        print(f"{note['pubkey'][:8]}: {note['content']}")

    print()
    print(f"Fetches: {transport.fetch_count}")


if __name__ == "__main__":
    asyncio.run(main())

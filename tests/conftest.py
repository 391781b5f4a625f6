"""
Pytest configuration and fixtures for Hypernote tests.
"""

import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from hypernote.pipes import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from hypernote.config import EngineSettings  # noqa: E402
from hypernote.engine import HypernoteEngine  # noqa: E402
from hypernote.resolution import FixedClock  # noqa: E402
from hypernote.transports import InMemorySigner, InMemoryTransport, compute_record_id  # noqa: E402

USER = "a" * 64
ALICE = "b" * 64
BOB = "c" * 64

# 2026-01-01T00:00:00Z in milliseconds
NOW_MS = 1_767_225_600_000


def make_event(kind=1, pubkey=USER, content="", tags=None, created_at=1_767_225_000, **extra):
    """Build a stored event with a deterministic id."""
    event = {
        "pubkey": pubkey,
        "kind": kind,
        "content": content,
        "tags": tags or [],
        "created_at": created_at,
    }
    event.update(extra)
    event.setdefault("id", compute_record_id(event))
    return event


@pytest.fixture
def clock():
    """Deterministic clock at NOW_MS."""
    return FixedClock(now=NOW_MS)


@pytest.fixture
def transport():
    """Empty in-memory relay."""
    return InMemoryTransport()


@pytest.fixture
def signer():
    """Signer for the test user."""
    return InMemorySigner(pubkey=USER)


@pytest.fixture
def settings():
    """Engine settings with a short planner window."""
    return EngineSettings(planner_debounce_seconds=0.01, fetch_timeout_seconds=1.0)


@pytest.fixture
def engine(transport, signer, settings, clock):
    """Engine wired to the in-memory transport and signer."""
    return HypernoteEngine(transport, signer=signer, settings=settings, clock=clock)


@pytest.fixture
def contact_list():
    """A kind-3 contact list of the test user following alice and bob."""
    return make_event(kind=3, tags=[["p", "abc"], ["p", "def"]])

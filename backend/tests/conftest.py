"""Shared test fixtures for backend tests.

Provides an isolated EventBus, comparison building blocks and a temporary
settings database so tests never touch real LLM providers.
"""

import sys
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from comparison.cloner import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from comparison.aggregator import ResponseAggregator, TargetEvent  # noqa: E402
from comparison.cloner import LogicalRequest, clone_request  # noqa: E402
from comparison.gate import ApprovalGate  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import ComparisonEvent  # noqa: E402
from models.database import SettingsStore  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Comparison building blocks
# ---------------------------------------------------------------------------


@pytest.fixture()
def aggregator() -> ResponseAggregator:
    """Provide a fresh ResponseAggregator for each test."""
    return ResponseAggregator()


@pytest.fixture()
def gate() -> ApprovalGate:
    """Provide an ApprovalGate without a decision timeout."""
    return ApprovalGate()


@pytest.fixture()
def logical_request() -> LogicalRequest:
    """A request with one prior exchange."""
    return clone_request(
        "Explain closures",
        [
            {"role": "user", "text": "Hi"},
            {"role": "assistant", "text": "Hello! How can I help?"},
        ],
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@pytest.fixture()
async def settings_store(tmp_path: Any) -> SettingsStore:
    """Provide an initialized SettingsStore backed by a temp SQLite file."""
    store = SettingsStore(str(tmp_path / "data" / "settings.db"))
    await store.init()
    return store


# ---------------------------------------------------------------------------
# Event Collection Helpers
# ---------------------------------------------------------------------------


def drain_queue(queue: Any) -> list[ComparisonEvent]:
    """Return every event currently sitting in a subscriber queue."""
    events: list[ComparisonEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


async def collect_target_events(stream: Any) -> list[TargetEvent]:
    """Drain an adapter dispatch stream into a list."""
    return [event async for event in stream]

"""Event system for streaming comparison progress.

Key Components:
    - EventType: Enum of all event types in the system
    - ComparisonEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub keyed by request id

Usage:
    >>> from events import ComparisonEvent, EventType, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("req_123")
    >>> await bus.publish(ComparisonEvent(
    ...     type=EventType.REQUEST_STARTED,
    ...     request_id="req_123",
    ...     data={"message": "Explain closures", "target_ids": ["gpt-5"]},
    ... ))

Event Flow:
    1. The orchestrator reports per-target updates to the run manager
    2. The run manager publishes them on the EventBus
    3. The WebSocket handler subscribes to the request and forwards events
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    ComparisonEvent,
    EventType,
)

__all__ = [
    # Event types
    "EventType",
    "ComparisonEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]

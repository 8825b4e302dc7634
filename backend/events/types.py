"""Event type definitions for comparison progress.

Every meaningful state change of a comparison produces an event that flows
from the run manager to WebSocket subscribers.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types of a comparison run.

    Events are categorized by:
    - Request lifecycle: start, completion, cancellation and error states
    - Target progress: deltas, tool calls and per-target completion
    - Prompt inspection: the rendered prompt of each target
    """

    # Request lifecycle
    REQUEST_STARTED = "request_started"
    REQUEST_COMPLETE = "request_complete"
    REQUEST_CANCELLED = "request_cancelled"
    REQUEST_ERROR = "request_error"
    STREAM_CLOSED = "stream_closed"

    # Prompt inspection
    PROMPT_RENDERED = "prompt_rendered"

    # Target progress
    TARGET_DELTA = "target_delta"
    TOOL_PENDING = "tool_pending"
    TOOL_RESOLVED = "tool_resolved"
    TARGET_COMPLETE = "target_complete"
    TARGET_ERROR = "target_error"


class ComparisonEvent(BaseModel):
    """An event emitted while a comparison runs.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - request_id: Which logical request this event belongs to
    - target_id: Which target produced this event (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    REQUEST_STARTED:
        - message: str - The user message
        - target_ids: list - Participating targets, in order
        - modified_targets: list - Targets with a prompt modification

    PROMPT_RENDERED:
        - prompt: str - The rendered prompt as display text
        - analysis: dict - message_count, roles, total_chars, estimated_tokens

    TARGET_DELTA:
        - text: str - Newly streamed text
        - accumulated_length: int - Length of the target's text so far

    TOOL_PENDING:
        - tool_call_id: str - The call awaiting a decision
        - tool_name: str - Tool being called
        - arguments: dict - Tool arguments
        - display_message: str - Human-readable description

    TOOL_RESOLVED:
        - tool_call_id: str - The resolved call
        - status: str - approved, denied or executed

    TARGET_COMPLETE:
        - response: str - The target's full text
        - response_time_ms: int - Time from start to completion

    TARGET_ERROR:
        - error: str - Failure description
        - cancelled: bool - Whether cancellation caused the failure

    REQUEST_COMPLETE:
        - result: dict - Presentation projection of the aggregate

    REQUEST_CANCELLED:
        - reason: str - Why the request was cancelled

    REQUEST_ERROR:
        - error: str - Failure description
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    request_id: str
    target_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "target_delta",
                    "timestamp": 1699876543.123,
                    "request_id": "req_abc123def456",
                    "target_id": "gpt-5",
                    "data": {"text": "Closures capture ", "accumulated_length": 17},
                }
            ]
        }
    }

"""Request cloning and per-target dispatch descriptors.

A LogicalRequest is the immutable snapshot of one user message plus its
history. ``create_parallel_requests`` turns it into one DispatchDescriptor per
target. Each descriptor carries that target's request-local configuration
(prompt modifier, render observer, approval gate, cancellation event), so the
pipeline can find the right configuration on the object it threads through an
invocation instead of looking it up anywhere shared.

Usage:
    >>> request = clone_request("Explain this function", [])
    >>> descriptors = create_parallel_requests(request, ["gpt-5", "claude-sonnet-4"])
    >>> [d.target_id for d in descriptors]
    ['gpt-5', 'claude-sonnet-4']
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog

from comparison.errors import InvalidRequestError
from config import settings

if TYPE_CHECKING:
    from comparison.gate import ApprovalGate

logger = structlog.get_logger(__name__)

# Rendered chat messages in the OpenAI/LiteLLM shape ({"role": ..., "content": ...})
Messages = list[dict[str, Any]]
PromptModifier = Callable[[Messages], Messages]
RenderObserver = Callable[[Messages], None]

# Allowed clock skew for requests stamped slightly in the future
_MAX_FUTURE_SKEW_SECONDS = 1.0


@dataclass(frozen=True)
class HistoryTurn:
    """One prior turn of the conversation."""

    role: str
    text: str


@dataclass(frozen=True)
class LogicalRequest:
    """Immutable snapshot of one user request.

    Attributes:
        request_id: Opaque unique token shared by every target.
        message: The (trimmed) user message.
        history: Prior turns, oldest first.
        created_at: Unix timestamp of creation.
    """

    request_id: str
    message: str
    history: tuple[HistoryTurn, ...] = ()
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DispatchDescriptor:
    """Per-target dispatch record.

    Visible to exactly one adapter invocation and never mutated after creation.

    Attributes:
        request_id: The logical request this dispatch belongs to.
        target_id: The target (model) to invoke.
        message: The user message.
        history: This descriptor's own copy of the history turns.
        prompt_modifier: Optional transform applied to the rendered messages.
        on_render_observed: Optional callback receiving the rendered messages.
        approval_gate: Gate that tool calls of this invocation suspend on.
        cancel_event: Cancellation signal shared by all targets of the request.
    """

    request_id: str
    target_id: str
    message: str
    history: tuple[HistoryTurn, ...] = ()
    prompt_modifier: PromptModifier | None = field(default=None, compare=False)
    on_render_observed: RenderObserver | None = field(default=None, compare=False)
    approval_gate: ApprovalGate | None = field(default=None, compare=False, repr=False)
    cancel_event: asyncio.Event | None = field(default=None, compare=False, repr=False)


def _generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def _coerce_turn(entry: Any, index: int) -> HistoryTurn:
    """Convert one history entry into a HistoryTurn or raise InvalidRequestError."""
    if isinstance(entry, HistoryTurn):
        role, text = entry.role, entry.text
    elif isinstance(entry, Mapping):
        role = entry.get("role")
        text = entry.get("text", entry.get("content"))
    else:
        raise InvalidRequestError(
            f"History entry {index} must be a mapping with 'role' and 'text'"
        )

    if not isinstance(role, str) or not role.strip():
        raise InvalidRequestError(f"History entry {index} is missing a role")
    if not isinstance(text, str):
        raise InvalidRequestError(f"History entry {index} is missing text")
    return HistoryTurn(role=role.strip(), text=text)


def _is_well_formed(history: Any) -> bool:
    if not isinstance(history, (list, tuple)):
        return False
    return all(
        isinstance(turn, HistoryTurn)
        and isinstance(turn.role, str)
        and bool(turn.role)
        and isinstance(turn.text, str)
        for turn in history
    )


def clone_request(
    message: str,
    history: Sequence[HistoryTurn | Mapping[str, Any]] | None = None,
    *,
    request_id: str | None = None,
) -> LogicalRequest:
    """Create an immutable LogicalRequest from a message and its history.

    Args:
        message: The user message. Leading/trailing whitespace is removed.
        history: Prior turns as HistoryTurn objects or mappings with
            ``role`` and ``text`` (``content`` is accepted for ``text``).
        request_id: Optional explicit id; generated when omitted.

    Returns:
        The new LogicalRequest.

    Raises:
        InvalidRequestError: If the message is empty or history is malformed.
    """
    if not isinstance(message, str) or not message.strip():
        raise InvalidRequestError("Message must be a non-empty string")

    if history is None:
        history = []
    if not isinstance(history, (list, tuple)):
        raise InvalidRequestError("History must be a list of turns")

    turns = tuple(_coerce_turn(entry, i) for i, entry in enumerate(history))
    request = LogicalRequest(
        request_id=request_id or _generate_request_id(),
        message=message.strip(),
        history=turns,
    )

    logger.debug(
        "request_cloned",
        request_id=request.request_id,
        message_length=len(request.message),
        history_length=len(turns),
    )
    return request


def validate_request(request: LogicalRequest) -> bool:
    """Cheap precondition check before dispatch.

    True iff the message is a non-empty string, every history entry is well
    formed, and the creation timestamp is neither too old nor in the future.
    """
    if not isinstance(request.message, str) or not request.message.strip():
        return False
    if not _is_well_formed(request.history):
        return False

    now = time.time()
    max_age = settings.request_max_age_hours * 3600
    return now - max_age <= request.created_at <= now + _MAX_FUTURE_SKEW_SECONDS


def create_parallel_requests(
    request: LogicalRequest,
    target_ids: Sequence[str],
    *,
    prompt_modifiers: Mapping[str, PromptModifier | None] | None = None,
    render_observers: Mapping[str, RenderObserver | None] | None = None,
    approval_gate: ApprovalGate | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[DispatchDescriptor]:
    """Build one DispatchDescriptor per target.

    Args:
        request: The logical request to fan out.
        target_ids: Non-empty sequence of unique target ids.
        prompt_modifiers: Optional target id -> modifier mapping. Missing or
            None entries mean the target's default prompt.
        render_observers: Optional target id -> observer mapping.
        approval_gate: Gate shared by all descriptors of this request.
        cancel_event: Cancellation signal shared by all descriptors.

    Returns:
        Descriptors in the same order as ``target_ids``.

    Raises:
        InvalidRequestError: If target_ids is empty or contains duplicates.
    """
    if not target_ids:
        raise InvalidRequestError("At least one target is required")
    if len(set(target_ids)) != len(target_ids):
        raise InvalidRequestError("Target ids must be unique")

    prompt_modifiers = prompt_modifiers or {}
    render_observers = render_observers or {}

    descriptors = [
        DispatchDescriptor(
            request_id=request.request_id,
            target_id=target_id,
            message=request.message,
            history=tuple(replace(turn) for turn in request.history),
            prompt_modifier=prompt_modifiers.get(target_id),
            on_render_observed=render_observers.get(target_id),
            approval_gate=approval_gate,
            cancel_event=cancel_event,
        )
        for target_id in target_ids
    ]

    logger.debug(
        "parallel_requests_created",
        request_id=request.request_id,
        target_count=len(descriptors),
    )
    return descriptors


def are_requests_equivalent(a: LogicalRequest, b: LogicalRequest) -> bool:
    """Return True if two requests carry the same message and history."""
    return a.message == b.message and a.history == b.history

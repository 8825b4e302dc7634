"""Approval gate for tool calls proposed by targets.

When a target's pipeline wants to run a tool, the call is registered here as
Proposed and the pipeline suspends on a future until an external decision
arrives. Decisions are scoped to one target or to ``"all"`` targets of a
logical request, and to one tool call or ``"all-pending"`` calls.

State machine per tool call::

    Proposed -> Approved -> Executed
    Proposed -> Denied   -> Skipped

Decisions for calls that are no longer Proposed are ignored, so duplicate or
late UI actions are harmless. Cancelling a request denies everything still
Proposed and denies any later proposal on arrival.

An ``"all"`` approval only covers calls that are Proposed when it arrives.
Calls proposed afterwards wait for their own decision.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

ALL_TARGETS = "all"
ALL_PENDING = "all-pending"


class ApprovalState(StrEnum):
    """Lifecycle state of a proposed tool call."""

    PROPOSED = "proposed"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTED = "executed"
    SKIPPED = "skipped"


class Decision(StrEnum):
    APPROVE = "approve"
    DENY = "deny"


@dataclass(frozen=True)
class ApprovalDecision:
    """An external approve/deny decision.

    Attributes:
        request_id: The logical request the decision applies to.
        decision: approve or deny.
        target_id: A specific target id, or "all".
        tool_call_id: A specific tool call id, or "all-pending".
    """

    request_id: str
    decision: Decision
    target_id: str = ALL_TARGETS
    tool_call_id: str = ALL_PENDING

    def matches(self, call: ProposedToolCall) -> bool:
        if call.request_id != self.request_id:
            return False
        if self.target_id != ALL_TARGETS and call.target_id != self.target_id:
            return False
        return self.tool_call_id == ALL_PENDING or call.tool_call_id == self.tool_call_id


@dataclass
class ProposedToolCall:
    """A tool call waiting for (or past) its approval decision."""

    request_id: str
    target_id: str
    tool_call_id: str
    name: str
    arguments: dict[str, Any] | None
    future: asyncio.Future[ApprovalState]
    state: ApprovalState = ApprovalState.PROPOSED
    proposed_at: float = field(default_factory=time.time)
    decided_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "target_id": self.target_id,
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "arguments": self.arguments or {},
            "state": self.state.value,
            "proposed_at": self.proposed_at,
            "decided_at": self.decided_at,
        }


def _resolve_future(future: asyncio.Future[ApprovalState], state: ApprovalState) -> None:
    """Set a future's result on its own loop, from any thread."""

    def _set() -> None:
        if not future.done():
            future.set_result(state)

    loop = future.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is loop:
        _set()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(_set)


class ApprovalGate:
    """Registry of proposed tool calls, keyed by request and tool call id.

    Thread Safety:
        The registry is guarded by a threading.Lock. State transitions happen
        under the lock; futures are resolved on their own event loop.
    """

    def __init__(self, default_timeout: float | None = None) -> None:
        """Initialize the gate.

        Args:
            default_timeout: Seconds a proposal waits before being denied.
                None waits until a decision or cancellation arrives.
        """
        self.default_timeout = default_timeout
        self._calls: dict[str, dict[str, ProposedToolCall]] = {}
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def propose(
        self,
        request_id: str,
        target_id: str,
        tool_call_id: str,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ProposedToolCall:
        """Register a tool call as Proposed.

        Must be called from a running event loop. If the request has already
        been cancelled the call is Denied immediately.
        """
        future: asyncio.Future[ApprovalState] = asyncio.get_running_loop().create_future()
        call = ProposedToolCall(
            request_id=request_id,
            target_id=target_id,
            tool_call_id=tool_call_id,
            name=name,
            arguments=arguments,
            future=future,
        )

        with self._lock:
            calls = self._calls.setdefault(request_id, {})
            key = f"{target_id}:{tool_call_id}"
            calls[key] = call
            cancelled = request_id in self._cancelled
            if cancelled:
                call.state = ApprovalState.DENIED
                call.decided_at = time.time()
                future.set_result(ApprovalState.DENIED)

        logger.info(
            "tool_call_proposed",
            request_id=request_id,
            target_id=target_id,
            tool_call_id=tool_call_id,
            tool_name=name,
            auto_denied=cancelled,
        )
        return call

    async def wait(
        self, call: ProposedToolCall, timeout: float | None = None
    ) -> ApprovalState:
        """Suspend until the call is approved or denied.

        Args:
            call: The proposed call.
            timeout: Seconds to wait before denying; defaults to the gate's
                default_timeout.

        Returns:
            ApprovalState.APPROVED or ApprovalState.DENIED.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(asyncio.shield(call.future), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "tool_call_approval_timeout",
                request_id=call.request_id,
                target_id=call.target_id,
                tool_call_id=call.tool_call_id,
                timeout=timeout,
            )
            self._transition(call, ApprovalState.DENIED)
            return call.state if call.state != ApprovalState.PROPOSED else ApprovalState.DENIED

    async def request_approval(
        self,
        request_id: str,
        target_id: str,
        tool_call_id: str,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ApprovalState:
        """Propose a call and wait for its decision."""
        call = self.propose(request_id, target_id, tool_call_id, name, arguments)
        return await self.wait(call)

    def _transition(self, call: ProposedToolCall, state: ApprovalState) -> bool:
        """Move a Proposed call to APPROVED/DENIED. Returns False if already decided."""
        with self._lock:
            if call.state != ApprovalState.PROPOSED:
                return False
            call.state = state
            call.decided_at = time.time()
        _resolve_future(call.future, state)
        return True

    def decide(self, decision: ApprovalDecision) -> list[ProposedToolCall]:
        """Apply a decision to every matching Proposed call.

        Returns:
            The calls this decision resolved. Empty when nothing matched,
            including duplicates of an earlier decision and unknown requests.
        """
        new_state = (
            ApprovalState.APPROVED
            if decision.decision == Decision.APPROVE
            else ApprovalState.DENIED
        )

        with self._lock:
            candidates = [
                call
                for call in self._calls.get(decision.request_id, {}).values()
                if call.state == ApprovalState.PROPOSED and decision.matches(call)
            ]

        resolved = [call for call in candidates if self._transition(call, new_state)]

        logger.info(
            "approval_decision_applied",
            request_id=decision.request_id,
            target_id=decision.target_id,
            tool_call_id=decision.tool_call_id,
            decision=decision.decision.value,
            resolved=len(resolved),
        )
        return resolved

    def mark_executed(self, call: ProposedToolCall) -> None:
        with self._lock:
            if call.state == ApprovalState.APPROVED:
                call.state = ApprovalState.EXECUTED

    def mark_skipped(self, call: ProposedToolCall) -> None:
        with self._lock:
            if call.state == ApprovalState.DENIED:
                call.state = ApprovalState.SKIPPED

    def cancel_request(self, request_id: str) -> list[ProposedToolCall]:
        """Deny every Proposed call of a request, and any proposed later.

        Returns:
            The calls that were denied by this cancellation.
        """
        with self._lock:
            self._cancelled.add(request_id)
            candidates = [
                call
                for call in self._calls.get(request_id, {}).values()
                if call.state == ApprovalState.PROPOSED
            ]

        denied = [call for call in candidates if self._transition(call, ApprovalState.DENIED)]
        logger.info("approvals_cancelled", request_id=request_id, denied=len(denied))
        return denied

    def pending_calls(
        self, request_id: str, target_id: str | None = None
    ) -> list[ProposedToolCall]:
        """Calls of a request (optionally one target) still waiting for a decision."""
        with self._lock:
            return [
                call
                for call in self._calls.get(request_id, {}).values()
                if call.state == ApprovalState.PROPOSED
                and (target_id is None or call.target_id == target_id)
            ]

    def has_pending(self, request_id: str) -> bool:
        return bool(self.pending_calls(request_id))

    def get_calls(self, request_id: str) -> list[ProposedToolCall]:
        with self._lock:
            return list(self._calls.get(request_id, {}).values())

    def release_request(self, request_id: str) -> None:
        """Forget a finished request. Anything still Proposed is denied first."""
        for call in self.pending_calls(request_id):
            self._transition(call, ApprovalState.DENIED)
        with self._lock:
            self._calls.pop(request_id, None)
            self._cancelled.discard(request_id)

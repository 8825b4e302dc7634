"""Tests for comparison/orchestrator.py -- fan-out orchestration.

Covers concurrent dispatch to many targets, progress callbacks, prompt
modifications, failure isolation, cancellation and approval decisions.
"""

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from comparison.cloner import LogicalRequest, Messages, clone_request
from comparison.errors import InvalidRequestError
from comparison.gate import ApprovalDecision, Decision
from comparison.orchestrator import ComparisonOrchestrator
from comparison.prompts import PromptModification
from pipelines.mock import MockFailure, MockPipeline, MockToolCall

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _wait_until(predicate, timeout: float = 1.0) -> None:  # noqa: ANN001
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# =========================================================================
# Fan-out
# =========================================================================


class TestSendToMultipleTargets:
    """One request dispatched to every target concurrently."""

    async def test_all_targets_complete(self) -> None:
        pipeline = MockPipeline(scripts={"a": ["alpha"], "b": ["beta"], "c": ["gamma"]})
        orchestrator = ComparisonOrchestrator(pipeline)

        result = await orchestrator.send_to_multiple_targets(
            clone_request("hi"), ["a", "b", "c"]
        )

        assert result.is_complete is True
        assert result.stats.success_count == 3
        assert {t: s.accumulated_text for t, s in result.per_target.items()} == {
            "a": "alpha",
            "b": "beta",
            "c": "gamma",
        }
        assert orchestrator.get_active_request_ids() == []
        assert orchestrator.aggregator.get_active_aggregation_ids() == []

    async def test_callbacks_report_progress(self) -> None:
        pipeline = MockPipeline(scripts={"a": ["one", "two"], "b": ["three"]})
        orchestrator = ComparisonOrchestrator(pipeline)
        on_delta = MagicMock()
        on_complete = MagicMock()

        await orchestrator.send_to_multiple_targets(
            clone_request("hi"), ["a", "b"], on_delta=on_delta, on_complete=on_complete
        )

        assert on_delta.call_count == 3
        completed = sorted(call.args[0] for call in on_complete.call_args_list)
        assert completed == ["a", "b"]

    async def test_targets_run_concurrently(self) -> None:
        pipeline = MockPipeline(scripts={t: ["x"] * 5 for t in "abcd"}, chunk_delay=0.02)
        orchestrator = ComparisonOrchestrator(pipeline)

        started = time.monotonic()
        await orchestrator.send_to_multiple_targets(clone_request("hi"), list("abcd"))
        elapsed = time.monotonic() - started

        # Sequential dispatch would take at least 4 * 5 * 0.02 seconds
        assert elapsed < 0.3

    async def test_prompt_modifications_applied(self) -> None:
        pipeline = MockPipeline()
        orchestrator = ComparisonOrchestrator(pipeline)

        result = await orchestrator.send_to_multiple_targets(
            clone_request("Explain closures"),
            ["a", "b"],
            prompt_modifiers={
                "a": PromptModification(
                    custom_system_message="CUSTOM", replace_system_message=True
                ),
                "b": None,
            },
        )

        assert result.per_target["a"].accumulated_text.startswith("[CUSTOM] ")
        assert not result.per_target["b"].accumulated_text.startswith("[CUSTOM]")

    async def test_render_observer_factory(self) -> None:
        orchestrator = ComparisonOrchestrator(MockPipeline())
        seen: dict[str, list[Messages]] = {"a": [], "b": []}

        await orchestrator.send_to_multiple_targets(
            clone_request("hi"),
            ["a", "b"],
            render_observer=lambda target_id: seen[target_id].append,
        )

        assert len(seen["a"]) == 1
        assert len(seen["b"]) == 1
        assert seen["a"][0][-1] == {"role": "user", "content": "hi"}

    async def test_failure_isolated(self) -> None:
        pipeline = MockPipeline(scripts={"a": [MockFailure("provider down")], "b": ["ok"]})
        orchestrator = ComparisonOrchestrator(pipeline)

        result = await orchestrator.send_to_multiple_targets(clone_request("hi"), ["a", "b"])

        assert result.per_target["a"].error == "provider down"
        assert result.per_target["b"].accumulated_text == "ok"
        assert result.stats.error_count == 1

    async def test_concurrent_requests_share_pipeline(self) -> None:
        pipeline = MockPipeline(chunk_delay=0.005)
        orchestrator = ComparisonOrchestrator(pipeline)

        first, second = await asyncio.gather(
            orchestrator.send_to_multiple_targets(
                clone_request("first question"),
                ["a", "b"],
                prompt_modifiers={"a": PromptModification(custom_system_message="ONE")},
            ),
            orchestrator.send_to_multiple_targets(
                clone_request("second question"),
                ["a", "b"],
                prompt_modifiers={"a": PromptModification(custom_system_message="TWO")},
            ),
        )

        assert first.per_target["a"].accumulated_text.startswith("[ONE")
        assert "first question" in first.per_target["a"].accumulated_text
        assert second.per_target["a"].accumulated_text.startswith("[TWO")
        assert "second question" in second.per_target["a"].accumulated_text


# =========================================================================
# Validation
# =========================================================================


class TestValidation:
    async def test_stale_request_rejected(self) -> None:
        orchestrator = ComparisonOrchestrator(MockPipeline())
        stale = LogicalRequest(request_id="req_old", message="hi", created_at=0.0)
        with pytest.raises(InvalidRequestError):
            await orchestrator.send_to_multiple_targets(stale, ["a"])

    async def test_duplicate_targets_rejected(self) -> None:
        orchestrator = ComparisonOrchestrator(MockPipeline())
        with pytest.raises(InvalidRequestError):
            await orchestrator.send_to_multiple_targets(clone_request("hi"), ["a", "a"])
        assert orchestrator.aggregator.get_active_aggregation_ids() == []


# =========================================================================
# Cancellation
# =========================================================================


class TestCancellation:
    """Cancelling resolves the request with cancelled errors."""

    async def test_cancel_request(self) -> None:
        pipeline = MockPipeline(scripts={"a": ["x"] * 100, "b": ["y"] * 100}, chunk_delay=0.01)
        orchestrator = ComparisonOrchestrator(pipeline)
        request = clone_request("hi")

        task = asyncio.create_task(
            orchestrator.send_to_multiple_targets(request, ["a", "b"])
        )
        await _wait_until(lambda: request.request_id in orchestrator.get_active_request_ids())

        assert orchestrator.cancel_request(request.request_id) is True
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.is_complete is True
        assert all(state.cancelled for state in result.per_target.values())
        assert result.stats.error_count == 2

    async def test_cancel_unknown_request(self) -> None:
        assert ComparisonOrchestrator(MockPipeline()).cancel_request("req_missing") is False

    async def test_cancel_event_denies_pending_tool_calls(self) -> None:
        pipeline = MockPipeline(scripts={"a": [MockToolCall("read_file", {"path": "x"})]})
        orchestrator = ComparisonOrchestrator(pipeline)
        request = clone_request("hi")
        cancel_event = asyncio.Event()

        task = asyncio.create_task(
            orchestrator.send_to_multiple_targets(request, ["a"], cancel_event=cancel_event)
        )
        await _wait_until(lambda: orchestrator.gate.has_pending(request.request_id))
        cancel_event.set()
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.per_target["a"].cancelled is True
        assert orchestrator.gate.get_calls(request.request_id) == []

    async def test_caller_cancellation_stops_targets(self) -> None:
        pipeline = MockPipeline(scripts={"a": ["x"] * 100}, chunk_delay=0.01)
        orchestrator = ComparisonOrchestrator(pipeline)
        request = clone_request("hi")

        task = asyncio.create_task(orchestrator.send_to_multiple_targets(request, ["a"]))
        await _wait_until(lambda: request.request_id in orchestrator.get_active_request_ids())
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert orchestrator.get_active_request_ids() == []
        assert orchestrator.aggregator.get_active_aggregation_ids() == []


# =========================================================================
# Approval decisions
# =========================================================================


class TestApprovalDecisions:
    """Decisions are routed to the gate."""

    async def test_scoped_decisions(self) -> None:
        pipeline = MockPipeline(
            scripts={
                "a": [MockToolCall("read_file", {"path": "a.py"}, result="A")],
                "b": [MockToolCall("read_file", {"path": "b.py"}, result="B")],
            }
        )
        orchestrator = ComparisonOrchestrator(pipeline)
        request = clone_request("hi")
        rid = request.request_id

        task = asyncio.create_task(orchestrator.send_to_multiple_targets(request, ["a", "b"]))
        await _wait_until(lambda: len(orchestrator.gate.pending_calls(rid)) == 2)

        denied = orchestrator.submit_decision(
            ApprovalDecision(request_id=rid, decision=Decision.DENY, target_id="b")
        )
        assert [call.target_id for call in denied] == ["b"]
        approved = orchestrator.submit_decision(
            ApprovalDecision(request_id=rid, decision=Decision.APPROVE)
        )
        assert [call.target_id for call in approved] == ["a"]

        result = await asyncio.wait_for(task, timeout=1.0)
        assert result.per_target["a"].accumulated_text == "[read_file: A] "
        assert result.per_target["b"].accumulated_text == "[read_file: denied] "
        assert [r.status.value for r in result.per_target["a"].tool_calls] == ["executed"]
        assert [r.status.value for r in result.per_target["b"].tool_calls] == ["denied"]


class TestDispose:
    async def test_dispose_releases_aggregator(self) -> None:
        orchestrator = ComparisonOrchestrator(MockPipeline())
        orchestrator.dispose()
        with pytest.raises(RuntimeError):
            await orchestrator.send_to_multiple_targets(clone_request("hi"), ["a"])

    async def test_dispose_releases_in_flight_request(self) -> None:
        pipeline = MockPipeline(scripts={"a": ["x"] * 50, "b": ["y"] * 50}, chunk_delay=0.01)
        orchestrator = ComparisonOrchestrator(pipeline)
        task = asyncio.create_task(
            orchestrator.send_to_multiple_targets(clone_request("hi"), ["a", "b"])
        )
        await asyncio.sleep(0.05)

        orchestrator.dispose()

        with pytest.raises(RuntimeError, match="released early"):
            await asyncio.wait_for(task, timeout=2.0)
        assert orchestrator.get_active_request_ids() == []

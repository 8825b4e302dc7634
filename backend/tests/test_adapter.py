"""Tests for comparison/adapter.py -- per-target invocation adapter.

Covers prompt modifier isolation between concurrent invocations sharing one
pipeline (including the adversarial interleaving where one invocation
renders after another has run to completion), hook installation
idempotence, failure containment, cancellation and approval gating.
"""

import asyncio

from comparison.adapter import TargetAdapter, install_prompt_hook
from comparison.aggregator import (
    ResponseAggregator,
    TargetEvent,
    TargetEventKind,
    ToolCallStatus,
)
from comparison.cloner import (
    DispatchDescriptor,
    Messages,
    PromptModifier,
    clone_request,
    create_parallel_requests,
)
from comparison.errors import TargetError
from comparison.gate import ApprovalDecision, ApprovalGate, Decision
from comparison.prompts import PromptModification, build_prompt_modifier
from config import settings
from pipelines.base import InvocationContext
from pipelines.mock import MockFailure, MockPipeline, MockToolCall, RenderRecord
from tests.conftest import collect_target_events

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _replace_with(text: str) -> PromptModifier:
    modifier = build_prompt_modifier(
        PromptModification(custom_system_message=text, replace_system_message=True)
    )
    assert modifier is not None
    return modifier


def _descriptors(
    target_ids: list[str], **kwargs: object
) -> dict[str, DispatchDescriptor]:
    request = clone_request("Explain closures")
    return {d.target_id: d for d in create_parallel_requests(request, target_ids, **kwargs)}


def _system_of(messages: Messages) -> str:
    return next(m["content"] for m in messages if m["role"] == "system")


class _HeldPipeline(MockPipeline):
    """Holds one target between building and rendering its prompt."""

    def __init__(self, held_target: str) -> None:
        super().__init__()
        self.held_target = held_target
        self.built = asyncio.Event()
        self.release = asyncio.Event()

    async def invoke(self, context: InvocationContext) -> None:
        messages = self.build_messages(context)
        if context.target_id == self.held_target:
            self.built.set()
            await self.release.wait()
        rendered = self.render_prompt(context, messages)
        self.render_log.append(
            RenderRecord(
                request_id=context.request_id,
                target_id=context.target_id,
                invocation_id=context.invocation_id,
                messages=rendered,
            )
        )
        await context.sink.on_delta(_system_of(rendered))


class _RaisingPipeline(MockPipeline):
    async def invoke(self, context: InvocationContext) -> None:
        raise TargetError(context.target_id, "Rate limited by provider")


async def _wait_for_pending(gate: ApprovalGate, request_id: str) -> None:
    for _ in range(200):
        if gate.has_pending(request_id):
            return
        await asyncio.sleep(0.005)
    raise AssertionError("no tool call was proposed")


# =========================================================================
# Prompt modifier isolation
# =========================================================================


class TestPromptIsolation:
    """Each invocation renders with its own descriptor's modifier."""

    async def test_concurrent_targets_keep_their_modifiers(self) -> None:
        pipeline = MockPipeline(render_delay=0.02)
        adapter = TargetAdapter(pipeline)
        descriptors = _descriptors(
            ["a", "b", "c"],
            prompt_modifiers={"a": _replace_with("PROMPT-A"), "b": _replace_with("PROMPT-B")},
        )

        results = await asyncio.gather(
            *(collect_target_events(adapter.dispatch(d)) for d in descriptors.values())
        )

        assert _system_of(pipeline.rendered_for("a")[0]) == "PROMPT-A"
        assert _system_of(pipeline.rendered_for("b")[0]) == "PROMPT-B"
        assert _system_of(pipeline.rendered_for("c")[0]) == settings.default_system_prompt
        texts = ["".join(e.text for e in events) for events in results]
        assert texts[0].startswith("[PROMPT-A] ")
        assert texts[1].startswith("[PROMPT-B] ")

    async def test_late_continuation_renders_own_modifier(self) -> None:
        pipeline = _HeldPipeline(held_target="a")
        adapter = TargetAdapter(pipeline)
        descriptors = _descriptors(
            ["a", "b"],
            prompt_modifiers={"a": _replace_with("PROMPT-A"), "b": _replace_with("PROMPT-B")},
        )

        held = asyncio.create_task(collect_target_events(adapter.dispatch(descriptors["a"])))
        await asyncio.wait_for(pipeline.built.wait(), timeout=1.0)

        # Target b is dispatched and finishes several times before a renders
        for _ in range(3):
            events = await collect_target_events(adapter.dispatch(descriptors["b"]))
            assert events[0].text == "PROMPT-B"

        pipeline.release.set()
        events = await asyncio.wait_for(held, timeout=1.0)

        assert events[0].text == "PROMPT-A"
        assert _system_of(pipeline.rendered_for("a")[0]) == "PROMPT-A"
        assert all(_system_of(m) == "PROMPT-B" for m in pipeline.rendered_for("b"))

    async def test_observer_sees_unmodified_prompt(self) -> None:
        pipeline = MockPipeline()
        adapter = TargetAdapter(pipeline)
        observed: list[Messages] = []
        descriptors = _descriptors(
            ["a"],
            prompt_modifiers={"a": _replace_with("PROMPT-A")},
            render_observers={"a": observed.append},
        )

        await collect_target_events(adapter.dispatch(descriptors["a"]))

        assert _system_of(observed[0]) == settings.default_system_prompt
        assert _system_of(pipeline.rendered_for("a")[0]) == "PROMPT-A"

    async def test_failing_observer_does_not_break_render(self) -> None:
        def broken_observer(messages: Messages) -> None:
            raise RuntimeError("observer bug")

        adapter = TargetAdapter(MockPipeline())
        descriptors = _descriptors(["a"], render_observers={"a": broken_observer})

        events = await collect_target_events(adapter.dispatch(descriptors["a"]))
        assert events[-1].kind == TargetEventKind.COMPLETE


# =========================================================================
# Hook installation
# =========================================================================


class TestHookInstallation:
    """The shared hook is wrapped exactly once per pipeline."""

    def test_install_is_idempotent(self) -> None:
        pipeline = MockPipeline()
        assert install_prompt_hook(pipeline) is True
        assert install_prompt_hook(pipeline) is False

    async def test_second_adapter_does_not_double_apply(self) -> None:
        pipeline = MockPipeline()
        TargetAdapter(pipeline)
        adapter = TargetAdapter(pipeline)
        modifier = build_prompt_modifier(PromptModification(custom_system_message="EXTRA"))
        descriptors = _descriptors(["a"], prompt_modifiers={"a": modifier})

        await collect_target_events(adapter.dispatch(descriptors["a"]))

        assert _system_of(pipeline.rendered_for("a")[0]) == (
            f"EXTRA\n\n{settings.default_system_prompt}"
        )


# =========================================================================
# Event stream
# =========================================================================


class TestEventStream:
    """Ordered events ending in exactly one terminal event."""

    async def test_deltas_then_complete(self) -> None:
        adapter = TargetAdapter(MockPipeline(scripts={"a": ["Hel", "lo"]}))
        events = await collect_target_events(adapter.dispatch(_descriptors(["a"])["a"]))

        assert [e.kind for e in events] == [
            TargetEventKind.DELTA,
            TargetEventKind.DELTA,
            TargetEventKind.COMPLETE,
        ]
        assert "".join(e.text for e in events) == "Hello"

    async def test_failure_becomes_error_event(self) -> None:
        adapter = TargetAdapter(MockPipeline(scripts={"a": ["partial", MockFailure("kaput")]}))
        events = await collect_target_events(adapter.dispatch(_descriptors(["a"])["a"]))

        assert events[0].text == "partial"
        assert events[-1].kind == TargetEventKind.ERROR
        assert events[-1].error == "kaput"
        assert sum(1 for e in events if e.is_terminal) == 1

    async def test_target_error_message_preserved(self) -> None:
        adapter = TargetAdapter(_RaisingPipeline())
        events = await collect_target_events(adapter.dispatch(_descriptors(["a"])["a"]))
        assert len(events) == 1
        assert events[-1].error == "Rate limited by provider"

    async def test_one_failure_does_not_affect_others(self) -> None:
        pipeline = MockPipeline(scripts={"a": [MockFailure()], "b": ["fine"]})
        aggregator = ResponseAggregator()
        adapter = TargetAdapter(pipeline, aggregator)
        descriptors = _descriptors(["a", "b"])
        request_id = descriptors["a"].request_id
        aggregator.start_aggregation(request_id, "Explain closures", ["a", "b"])

        await asyncio.gather(
            *(collect_target_events(adapter.dispatch(d)) for d in descriptors.values())
        )

        aggregated = aggregator.get_aggregation(request_id)
        assert aggregated.is_complete is True
        assert aggregated.per_target["a"].error == "Mock target failure"
        assert aggregated.per_target["b"].accumulated_text == "fine"
        assert aggregated.stats.success_count == 1
        assert aggregated.stats.error_count == 1


# =========================================================================
# Cancellation
# =========================================================================


class TestCancellation:
    """A set cancel event ends the stream with a cancelled error."""

    async def test_cancel_mid_stream(self) -> None:
        cancel_event = asyncio.Event()
        pipeline = MockPipeline(scripts={"a": ["x"] * 50}, chunk_delay=0.01)
        adapter = TargetAdapter(pipeline)
        descriptor = _descriptors(["a"], cancel_event=cancel_event)["a"]

        events: list[TargetEvent] = []
        async for event in adapter.dispatch(descriptor):
            events.append(event)
            if len(events) == 2:
                cancel_event.set()

        assert events[-1].kind == TargetEventKind.ERROR
        assert events[-1].cancelled is True
        assert len(events) < 50

    async def test_cancel_before_start(self) -> None:
        cancel_event = asyncio.Event()
        cancel_event.set()
        adapter = TargetAdapter(MockPipeline(chunk_delay=0.01))
        descriptor = _descriptors(["a"], cancel_event=cancel_event)["a"]

        events = await collect_target_events(adapter.dispatch(descriptor))

        assert len(events) == 1
        assert events[0].cancelled is True


# =========================================================================
# Approval gating
# =========================================================================


class TestToolApproval:
    """Tool calls suspend on the gate until decided."""

    async def test_no_gate_denies(self) -> None:
        pipeline = MockPipeline(scripts={"a": [MockToolCall("read_file", {"path": "a.py"})]})
        adapter = TargetAdapter(pipeline)
        events = await collect_target_events(adapter.dispatch(_descriptors(["a"])["a"]))

        assert [e.kind for e in events] == [
            TargetEventKind.TOOL_PENDING,
            TargetEventKind.TOOL_RESOLVED,
            TargetEventKind.DELTA,
            TargetEventKind.COMPLETE,
        ]
        assert events[1].tool_status == ToolCallStatus.DENIED
        assert events[2].text == "[read_file: denied] "

    async def test_approved_call_executes(self, gate: ApprovalGate) -> None:
        pipeline = MockPipeline(
            scripts={"a": [MockToolCall("read_file", {"path": "a.py"}, result="contents")]}
        )
        adapter = TargetAdapter(pipeline, gate=gate)
        descriptor = _descriptors(["a"])["a"]

        task = asyncio.create_task(collect_target_events(adapter.dispatch(descriptor)))
        await _wait_for_pending(gate, descriptor.request_id)
        gate.decide(ApprovalDecision(request_id=descriptor.request_id, decision=Decision.APPROVE))
        events = await asyncio.wait_for(task, timeout=1.0)

        statuses = [e.tool_status for e in events if e.kind == TargetEventKind.TOOL_RESOLVED]
        assert statuses == [ToolCallStatus.APPROVED, ToolCallStatus.EXECUTED]
        assert "[read_file: contents] " in [e.text for e in events]
        assert events[-1].kind == TargetEventKind.COMPLETE

    async def test_cancel_denies_waiting_call(self, gate: ApprovalGate) -> None:
        cancel_event = asyncio.Event()
        pipeline = MockPipeline(scripts={"a": [MockToolCall("list_dir", {"path": "."})]})
        adapter = TargetAdapter(pipeline, gate=gate)
        descriptor = _descriptors(["a"], cancel_event=cancel_event)["a"]

        task = asyncio.create_task(collect_target_events(adapter.dispatch(descriptor)))
        await _wait_for_pending(gate, descriptor.request_id)
        cancel_event.set()
        gate.cancel_request(descriptor.request_id)
        events = await asyncio.wait_for(task, timeout=1.0)

        assert events[-1].cancelled is True
        assert not gate.has_pending(descriptor.request_id)

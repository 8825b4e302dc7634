"""Invocation pipeline boundary.

A pipeline turns one DispatchDescriptor into streamed model output. The
comparison core only sees this boundary:

- ``invoke(context)`` runs one invocation. Returning normally means the
  target completed; raising means it failed.
- During prompt construction every pipeline calls
  ``self.render_prompt(context, messages)``. This is the single shared
  extension point; ``comparison.adapter.install_prompt_hook`` wraps it once
  so that the render observer and prompt modifier of *the invocation being
  rendered* are applied, looked up on ``context.descriptor``.
- Output flows back through ``context.sink``: text deltas, tool approval
  requests (which suspend until decided), and executed tool notifications.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol

from comparison.cloner import DispatchDescriptor, Messages
from comparison.gate import ApprovalState
from config import settings


class InvocationSink(Protocol):
    """Callbacks a pipeline reports through during one invocation."""

    async def on_delta(self, text: str) -> None: ...

    async def request_tool_approval(
        self,
        tool_call_id: str,
        name: str,
        arguments: dict[str, Any] | None,
    ) -> ApprovalState: ...

    async def tool_executed(self, tool_call_id: str) -> None: ...


@dataclass(frozen=True)
class InvocationContext:
    """Uniquely identifies one in-flight invocation.

    Threaded through the pipeline's whole call graph; per-invocation
    configuration is read from ``descriptor``.
    """

    descriptor: DispatchDescriptor
    sink: InvocationSink = field(repr=False)
    invocation_id: str = field(default_factory=lambda: f"inv_{uuid.uuid4().hex[:12]}")

    @property
    def target_id(self) -> str:
        return self.descriptor.target_id

    @property
    def request_id(self) -> str:
        return self.descriptor.request_id


class InvocationPipeline(ABC):
    """Base class for pipelines shared by all concurrent invocations."""

    system_prompt: str | None = None

    def render_prompt(self, context: InvocationContext, messages: Messages) -> Messages:
        """Final step of prompt construction. Returns the messages to send."""
        return messages

    def build_messages(self, context: InvocationContext) -> Messages:
        """System prompt, then history, then the user message."""
        descriptor = context.descriptor
        system_prompt = (
            self.system_prompt if self.system_prompt is not None else settings.default_system_prompt
        )
        messages: Messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(
            {"role": turn.role, "content": turn.text} for turn in descriptor.history
        )
        messages.append({"role": "user", "content": descriptor.message})
        return messages

    @abstractmethod
    async def invoke(self, context: InvocationContext) -> None:
        """Run one invocation to completion.

        Raises:
            Exception: Any failure; the adapter reports it as the target's error.
        """

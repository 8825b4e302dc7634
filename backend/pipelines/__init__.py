"""Invocation pipelines that targets are run through.

Key Components:
    - InvocationPipeline / InvocationContext: The pipeline boundary
    - LiteLLMPipeline: Streaming provider calls with gated workspace tools
    - MockPipeline: Scripted targets for development and tests
"""

from pipelines.base import InvocationContext, InvocationPipeline, InvocationSink
from pipelines.mock import MockFailure, MockPipeline, MockToolCall

__all__ = [
    "InvocationContext",
    "InvocationPipeline",
    "InvocationSink",
    "MockPipeline",
    "MockToolCall",
    "MockFailure",
]

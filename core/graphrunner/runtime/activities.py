"""
Activity contract between the workflow and the outside world.

Everything non-deterministic a node does (model steps, tool side effects,
timestamps, file writes) happens behind :class:`Activities`. The workflow
only ever reaches it through an :class:`ActivityProxy`, which applies the
timeout and retry policy and hands each call its own copy of the input.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from graphrunner.graph.messages import Message, ToolCallPart, ToolResultPart
from graphrunner.graph.model import Edge, Node
from graphrunner.graph.run_state import FileRef

logger = logging.getLogger(__name__)

DEFAULT_START_TO_CLOSE_TIMEOUT = 600.0  # 10 minutes


class FinishReason(StrEnum):
    STOP = "stop"
    TOOL_CALLS = "tool-calls"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"


class NodeStepInput(BaseModel):
    """Everything a model step needs to know about the node it serves."""

    run_id: str
    node: Node
    inputs: dict[str, Any] = Field(default_factory=dict)
    outgoing: list[Edge] = Field(default_factory=list)
    step: int = 0
    transcript: list[Message] = Field(default_factory=list)
    files: dict[str, FileRef] = Field(default_factory=dict)
    prompt: Any = None
    model_kind: str | None = None
    image_model_kind: str | None = None


class NodeStepResult(BaseModel):
    """
    Messages produced by one model step.

    Tool calls executed inside the step come back with their results as a
    ``tool`` message; ``files`` lists what those calls created.
    """

    finish_reason: str
    messages: list[Message] = Field(default_factory=list)
    files: list[FileRef] = Field(default_factory=list)


class ToolCallInput(BaseModel):
    run_id: str
    tool_call: ToolCallPart
    node: Node
    inputs: dict[str, Any] = Field(default_factory=dict)
    files: dict[str, FileRef] = Field(default_factory=dict)
    model_kind: str | None = None
    image_model_kind: str | None = None


class ToolCallResult(BaseModel):
    tool_result: ToolResultPart
    files: list[FileRef] = Field(default_factory=list)


class Activities(ABC):
    """External collaborators of the node executor."""

    @abstractmethod
    async def take_first_step(self, input: NodeStepInput) -> NodeStepResult:
        """Run the opening model step. ``input.transcript`` holds the prompt messages."""

    @abstractmethod
    async def take_followup_step(self, input: NodeStepInput) -> NodeStepResult:
        """Run a model step over the transcript accumulated so far."""

    @abstractmethod
    async def make_tool_call(self, input: ToolCallInput) -> ToolCallResult:
        """Execute a tool call the model step left unresolved."""


class ActivityError(Exception):
    """An activity failed or timed out. The underlying error is ``__cause__``."""

    def __init__(self, activity: str, attempts: int):
        super().__init__(f"Activity '{activity}' failed after {attempts} attempt(s)")
        self.activity = activity
        self.attempts = attempts


@dataclass
class RetryPolicy:
    maximum_attempts: int = 1
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0


class ActivityProxy:
    """
    Invokes activities with a start-to-close timeout and a retry policy.

    Retries are off by default: a failed model or tool call is surfaced on
    the node instead of being repeated.
    """

    def __init__(
        self,
        activities: Activities,
        start_to_close_timeout: float = DEFAULT_START_TO_CLOSE_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
    ):
        self._activities = activities
        self.start_to_close_timeout = start_to_close_timeout
        self.retry_policy = retry_policy or RetryPolicy()

    async def take_first_step(self, input: NodeStepInput) -> NodeStepResult:
        return await self._invoke("take_first_step", input)

    async def take_followup_step(self, input: NodeStepInput) -> NodeStepResult:
        return await self._invoke("take_followup_step", input)

    async def make_tool_call(self, input: ToolCallInput) -> ToolCallResult:
        return await self._invoke("make_tool_call", input)

    async def _invoke(self, name: str, input: BaseModel) -> Any:
        method = getattr(self._activities, name)
        attempts = max(1, self.retry_policy.maximum_attempts)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    method(input.model_copy(deep=True)),
                    timeout=self.start_to_close_timeout,
                )
            except TimeoutError:
                last_error = TimeoutError(
                    f"Activity '{name}' timed out after {self.start_to_close_timeout}s"
                )
            except Exception as e:
                last_error = e

            logger.warning(f"Activity '{name}' attempt {attempt}/{attempts} failed: {last_error}")
            if attempt < attempts:
                delay = self.retry_policy.initial_interval * (
                    self.retry_policy.backoff_coefficient ** (attempt - 1)
                )
                await asyncio.sleep(delay)

        raise ActivityError(name, attempts) from last_error

"""Shared fakes: scripted activities and a queued language model."""

from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from graphrunner.graph.messages import Message, Role, TextPart, ToolCallPart, ToolResultPart
from graphrunner.graph.model import Edge, Graph, Node
from graphrunner.llm.provider import LanguageModel, ModelResponse, ToolDefinition
from graphrunner.runtime.activities import (
    Activities,
    NodeStepInput,
    NodeStepResult,
    ToolCallInput,
    ToolCallResult,
)

StepImpl = Callable[[NodeStepInput], Awaitable[NodeStepResult]]
ToolCallImpl = Callable[[ToolCallInput], Awaitable[ToolCallResult]]


# ---- Step builders ----


def text_step(text: str) -> NodeStepResult:
    """A step that stops with a plain assistant text."""
    return NodeStepResult(
        finish_reason="stop",
        messages=[Message(role=Role.ASSISTANT, content=[TextPart(text=text)])],
    )


def call_step(*calls: ToolCallPart, results: list[ToolResultPart] | None = None) -> NodeStepResult:
    """A step that ends with tool calls (and optionally results already executed)."""
    messages = [Message(role=Role.ASSISTANT, content=list(calls))]
    if results:
        messages.append(Message.tool(results))
    return NodeStepResult(finish_reason="tool-calls", messages=messages)


def resolve_call(data: Any = None, message: str = "done", call_id: str = "resolve-1", **extra: Any) -> ToolCallPart:
    return ToolCallPart(
        tool_call_id=call_id,
        tool_name="resolveOutput",
        input={"message": message, "data": data, **extra},
    )


def input_call(name: str, prompt: str = "", call_id: str | None = None, default: Any = None) -> ToolCallPart:
    payload: dict[str, Any] = {"name": name, "prompt": prompt or f"Enter {name}"}
    if default is not None:
        payload["default"] = default
    return ToolCallPart(tool_call_id=call_id or f"input-{name}", tool_name="collectUserInput", input=payload)


def tool_results(input: NodeStepInput) -> list[ToolResultPart]:
    """Tool results recorded so far in a step input's transcript."""
    return [
        part
        for message in input.transcript
        if message.role == Role.TOOL
        for part in message.parts()
        if isinstance(part, ToolResultPart)
    ]


# ---- Fake activities ----


class ScriptedActivities(Activities):
    """Activities whose steps come from a callable; every input is recorded."""

    def __init__(self, step: StepImpl, tool_call: ToolCallImpl | None = None):
        self.step = step
        self.tool_call = tool_call
        self.step_inputs: list[NodeStepInput] = []
        self.tool_call_inputs: list[ToolCallInput] = []

    async def take_first_step(self, input: NodeStepInput) -> NodeStepResult:
        self.step_inputs.append(input)
        return await self.step(input)

    async def take_followup_step(self, input: NodeStepInput) -> NodeStepResult:
        self.step_inputs.append(input)
        return await self.step(input)

    async def make_tool_call(self, input: ToolCallInput) -> ToolCallResult:
        self.tool_call_inputs.append(input)
        if self.tool_call is None:
            raise RuntimeError(f'Unimplemented tool call "{input.tool_call.tool_name}"')
        return await self.tool_call(input)


def echo_activities() -> ScriptedActivities:
    """Every node stops at once with a text naming itself."""

    async def step(input: NodeStepInput) -> NodeStepResult:
        return text_step(f"Output from test node '{input.node.id}'")

    return ScriptedActivities(step)


# ---- Fake model ----


class FakeModel(LanguageModel):
    """Returns queued responses in order and records every call."""

    def __init__(self, responses: list[ModelResponse]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        **args: Any,
    ) -> ModelResponse:
        self.calls.append({"messages": messages, "tools": tools, "tool_choice": tool_choice, "args": args})
        if not self.responses:
            raise AssertionError("FakeModel ran out of responses")
        return self.responses.pop(0)


# ---- Graph fixtures ----


def make_graph(nodes: list[str | Node], edges: list[tuple[str, str]]) -> Graph:
    return Graph(
        nodes=[Node(id=n) if isinstance(n, str) else n for n in nodes],
        edges=[Edge(source=s, target=t) for s, t in edges],
    )


@pytest.fixture
def diamond_graph() -> Graph:
    """A -> B, A -> C, B -> D, C -> D"""
    return make_graph(["A", "B", "C", "D"], [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")])

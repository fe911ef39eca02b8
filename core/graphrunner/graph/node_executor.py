"""
Node Executor - drives one node through its tool-calling step loop.

Each step asks the model (through an activity) for the next move. The
model is forced to answer with tool calls:

- ``resolveOutput`` validates the node's output, applies its routing
  decision and ends the loop
- ``collectUserInput`` suspends the node until a human answers
- any other tool is delegated to the ``make_tool_call`` activity

Tool calls the step activity already executed come back with their
results and are not called again. The loop gives up after MAX_STEPS
steps, in which case the node has no output.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import jsonschema

from graphrunner.graph.input_broker import NeededInput, NeededInputBroker
from graphrunner.graph.messages import (
    Message,
    ToolCallPart,
    ToolResultPart,
    tool_calls_of,
    tool_results_of,
)
from graphrunner.graph.model import Edge, Node, NodeRouting, RoutingMode
from graphrunner.graph.prompts import build_prompt_messages
from graphrunner.graph.run_state import NodeStatus, RunState
from graphrunner.observability import set_trace_context
from graphrunner.runtime.activities import (
    ActivityProxy,
    FinishReason,
    NodeStepInput,
    ToolCallInput,
)
from graphrunner.tools.catalog import COLLECT_USER_INPUT, RESOLVE_OUTPUT

logger = logging.getLogger(__name__)

MAX_STEPS = 10


class NodeExecutionError(Exception):
    """A node could not produce its output."""


class OutputValidationError(NodeExecutionError):
    """The resolved output does not match the node's output schema."""

    def __init__(self, node_id: str, errors: list[str]):
        super().__init__(f"Output of node '{node_id}' failed validation: {'; '.join(errors)}")
        self.node_id = node_id
        self.errors = errors


def validate_output(data: Any, schema: dict[str, Any]) -> list[str]:
    """Validate resolved output data against a JSON schema."""
    validator_cls = jsonschema.validators.validator_for(schema, default=jsonschema.Draft7Validator)
    validator = validator_cls(schema)

    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    return errors


def selected_routes(call_input: dict[str, Any]) -> list[str]:
    """Route ids chosen in a resolveOutput call (``routes`` wins over ``route``)."""
    routes = call_input.get("routes")
    if isinstance(routes, list) and routes:
        return [str(r) for r in routes]
    route = call_input.get("route")
    if route:
        return [str(route)]
    return []


def route_selects(routing: NodeRouting | None, selected: list[str], target: str) -> bool:
    """Whether an outgoing edge to ``target`` stays live under the selection."""
    declared = {route.id: route for route in routing.routes} if routing else {}
    for route_id in selected:
        route = declared.get(route_id)
        if route is not None and route.selects(target):
            return True
        if route is None and route_id == target:
            return True
    return False


@dataclass
class _NodeRun:
    node: Node
    inputs: dict[str, Any]
    outgoing: list[Edge]
    transcript: list[Message] = field(default_factory=list)
    result: dict[str, Any] | None = None


class NodeExecutor:
    """
    Runs nodes of one graph run.

    The executor writes to the shared RunState: the running node's
    status while it waits for input, the transcript, the file registry,
    and the ``skipped`` status of outgoing targets a router excludes.
    """

    def __init__(
        self,
        state: RunState,
        activities: ActivityProxy,
        broker: NeededInputBroker,
        model_kind: str | None = None,
        image_model_kind: str | None = None,
    ):
        self.state = state
        self.activities = activities
        self.broker = broker
        self.model_kind = model_kind
        self.image_model_kind = image_model_kind

    async def run(self, node: Node, inputs: dict[str, Any], outgoing: list[Edge]) -> Any:
        """
        Drive a node to its output.

        Args:
            node: The node to run
            inputs: Outputs of its direct predecessors, keyed by node id
            outgoing: Its outgoing edges

        Returns:
            The resolved output, or None if the step budget ran out

        Raises:
            NodeExecutionError: On protocol violations or invalid output
            ActivityError: When a model step or tool call fails
            TemplateError: When an instruction fails to evaluate
        """
        set_trace_context(node_id=node.id)
        run = _NodeRun(node=node, inputs=inputs, outgoing=outgoing)

        for step in range(MAX_STEPS):
            prompt_messages: list[Message] = []
            if step == 0:
                prompt_messages = build_prompt_messages(
                    node.instructions, self._template_context(run, step)
                )
                run.transcript.extend(prompt_messages)
                step_result = await self.activities.take_first_step(self._step_input(run, step))
            else:
                step_result = await self.activities.take_followup_step(self._step_input(run, step))

            run.transcript.extend(step_result.messages)
            self.state.add_transcript(node.id, prompt_messages + step_result.messages)
            self.state.add_files(step_result.files)

            finish_reason = step_result.finish_reason
            if finish_reason == FinishReason.STOP:
                logger.info(f"Node '{node.id}' stopped without resolving through a tool")
                return self._stop_result(run)

            if finish_reason != FinishReason.TOOL_CALLS:
                raise NodeExecutionError(f"Unexpected finish reason: {finish_reason}")

            auto_results = tool_results_of(step_result.messages)
            auto_ids = {r.tool_call_id for r in auto_results}
            calls = [c for c in tool_calls_of(step_result.messages) if c.tool_call_id not in auto_ids]
            if not calls and not auto_results:
                raise NodeExecutionError("No tool calls found")

            results = await self._run_tool_calls(run, calls)
            if results:
                tool_message = Message.tool(results)
                run.transcript.append(tool_message)
                self.state.add_transcript(node.id, [tool_message])

            if run.result is not None:
                logger.info(f"Node '{node.id}' resolved after {step + 1} step(s)")
                return run.result

        logger.warning(f"Node '{node.id}' did not resolve within {MAX_STEPS} steps")
        return None

    def _template_context(self, run: _NodeRun, step: int) -> dict[str, Any]:
        return {
            "run_id": self.state.run_id,
            "node": run.node.model_dump(mode="json", by_alias=True, exclude_none=True),
            "inputs": run.inputs,
            "outgoing": [e.model_dump(mode="json", by_alias=True) for e in run.outgoing],
            "prompt": self.state.prompt or None,
            "transcript": [m.model_dump(mode="json") for m in run.transcript],
            "files": {fid: ref.model_dump(mode="json") for fid, ref in self.state.files.items()},
            "step": step,
        }

    def _step_input(self, run: _NodeRun, step: int) -> NodeStepInput:
        return NodeStepInput(
            run_id=self.state.run_id,
            node=run.node,
            inputs=run.inputs,
            outgoing=run.outgoing,
            step=step,
            transcript=run.transcript,
            files=self.state.files,
            prompt=self.state.prompt,
            model_kind=self.model_kind,
            image_model_kind=self.image_model_kind,
        )

    @staticmethod
    def _stop_result(run: _NodeRun) -> Any:
        content = run.transcript[-1].content if run.transcript else []
        if isinstance(content, str):
            return content
        parts = [part.model_dump(mode="json") for part in content]
        return parts[0] if len(parts) == 1 else parts

    async def _run_tool_calls(self, run: _NodeRun, calls: list[ToolCallPart]) -> list[ToolResultPart]:
        """Run a step's tool calls concurrently; the first failure cancels the rest."""
        if not calls:
            return []

        tasks = [asyncio.create_task(self._run_tool_call(run, call)) for call in calls]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]

    async def _run_tool_call(self, run: _NodeRun, call: ToolCallPart) -> ToolResultPart:
        if call.tool_name == COLLECT_USER_INPUT:
            return await self._collect_user_input(run, call)
        if call.tool_name == RESOLVE_OUTPUT:
            return self._resolve_output(run, call)

        logger.info(f"Node '{run.node.id}' calls tool '{call.tool_name}'", extra={"tool_name": call.tool_name})
        result = await self.activities.make_tool_call(
            ToolCallInput(
                run_id=self.state.run_id,
                tool_call=call,
                node=run.node,
                inputs=run.inputs,
                files=self.state.files,
                model_kind=self.model_kind,
                image_model_kind=self.image_model_kind,
            )
        )
        self.state.add_files(result.files)
        return result.tool_result

    async def _collect_user_input(self, run: _NodeRun, call: ToolCallPart) -> ToolResultPart:
        node_id = run.node.id
        name = call.input.get("name")
        if not name:
            raise NodeExecutionError(f"{COLLECT_USER_INPUT} called without an input name")

        request = NeededInput(
            name=str(name),
            prompt=str(call.input.get("prompt") or ""),
            default=call.input.get("default"),
            node_id=node_id,
        )
        future = self.broker.register(request)
        self.state.status[node_id] = NodeStatus.AWAITING
        try:
            value = await future
        except asyncio.CancelledError:
            self.broker.discard(node_id)
            raise

        # Another pending answer of this node may already have flipped it back
        current = self.state.status.get(node_id)
        if current not in (NodeStatus.AWAITING, NodeStatus.RUNNING):
            raise NodeExecutionError(
                f"Node '{node_id}' changed to '{current}' while waiting for input '{request.name}'"
            )
        if not self.broker.has_pending(node_id):
            self.state.status[node_id] = NodeStatus.RUNNING

        return ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=value)

    def _resolve_output(self, run: _NodeRun, call: ToolCallPart) -> ToolResultPart:
        node = run.node
        if node.output_schema:
            errors = validate_output(call.input.get("data"), node.output_schema)
            if errors:
                raise OutputValidationError(node.id, errors)

        routing = node.routing
        selected = selected_routes(call.input)
        if selected and (routing is None or routing.mode == RoutingMode.LLM_SWITCH):
            for edge in run.outgoing:
                if route_selects(routing, selected, edge.target):
                    continue
                # Only targets that have not been dispatched yet
                if self.state.status.get(edge.target) == NodeStatus.PENDING:
                    self.state.status[edge.target] = NodeStatus.SKIPPED
            logger.info(f"Node '{node.id}' routed to {selected}")

        run.result = {**(run.result or {}), **call.input}
        return ToolResultPart(
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            output=dict(run.result),
        )

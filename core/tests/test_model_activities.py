"""Tests for model-backed activities."""

import httpx
import pytest
from conftest import FakeModel

from graphrunner.graph.messages import Message, Role, TextPart, ToolCallPart
from graphrunner.graph.model import Node, NodeModelConfig, NodeType
from graphrunner.llm.activities import ModelStepActivities
from graphrunner.llm.litellm import LiteLLMModel
from graphrunner.llm.provider import ModelResponse, ModelWithArgs
from graphrunner.runtime.activities import NodeStepInput, ToolCallInput
from graphrunner.tools.catalog import ToolError
from graphrunner.tools.files import FileStore


def step_input(node: Node, **kwargs) -> NodeStepInput:
    return NodeStepInput(run_id="run-1", node=node, transcript=[Message.system("You are a node")], **kwargs)


def tool_response(*calls: ToolCallPart, content: str = "", error: str | None = None) -> ModelResponse:
    return ModelResponse(
        content=content,
        model="fake",
        tool_calls=list(calls),
        finish_reason="tool-calls",
        error=error,
    )


WRITE_CALL = ToolCallPart(
    tool_call_id="c1", tool_name="writeFile", input={"filename": "notes.txt", "content": "hello"}
)


class TestTakeStep:
    async def test_offers_node_tools_and_requires_a_call(self, tmp_path):
        model = FakeModel([tool_response(ToolCallPart(tool_call_id="r", tool_name="resolveOutput", input={}))])
        activities = ModelStepActivities(
            model=ModelWithArgs(model, {"temperature": 0.1}), file_store=FileStore(tmp_path)
        )

        await activities.take_first_step(step_input(Node(id="n", tools=["fetchUrl"])))

        [call] = model.calls
        assert [t.name for t in call["tools"]] == ["fetchUrl", "resolveOutput"]
        assert call["tool_choice"] == "required"
        assert call["args"] == {"temperature": 0.1}
        assert call["messages"] == [Message.system("You are a node")]

    async def test_input_nodes_can_collect_user_input(self, tmp_path):
        model = FakeModel([tool_response()])
        activities = ModelStepActivities(model=model, file_store=FileStore(tmp_path))

        await activities.take_first_step(step_input(Node(id="ask", type=NodeType.INPUT)))

        assert [t.name for t in model.calls[0]["tools"]] == ["collectUserInput", "resolveOutput"]

    async def test_node_step_tools_run_inline(self, tmp_path):
        fetch_call = ToolCallPart(tool_call_id="c2", tool_name="fetchUrl", input={"url": "https://example.com"})
        model = FakeModel([tool_response(WRITE_CALL, fetch_call, content="Writing it down")])
        activities = ModelStepActivities(model=model, file_store=FileStore(tmp_path))

        result = await activities.take_followup_step(step_input(Node(id="n", tools=["writeFile", "fetchUrl"])))

        assert result.finish_reason == "tool-calls"
        assistant, tool = result.messages
        assert assistant.role == Role.ASSISTANT
        assert assistant.content == [TextPart(text="Writing it down"), WRITE_CALL, fetch_call]
        assert tool.role == Role.TOOL
        # fetchUrl is left to the node executor
        [written] = tool.content
        assert written.tool_call_id == "c1"
        assert written.output["filename"] == "notes.txt"
        [ref] = result.files
        assert ref.id == written.output["id"]
        assert await FileStore(tmp_path).read_text(ref) == "hello"

    async def test_plain_answer(self, tmp_path):
        model = FakeModel([ModelResponse(content="All done", model="fake", finish_reason="stop")])
        activities = ModelStepActivities(model=model, file_store=FileStore(tmp_path))

        result = await activities.take_first_step(step_input(Node(id="n")))

        assert result.finish_reason == "stop"
        assert result.messages == [Message(role=Role.ASSISTANT, content=[TextPart(text="All done")])]
        assert result.files == []

    async def test_malformed_tool_call(self, tmp_path):
        model = FakeModel([tool_response(error="Invalid arguments for tool 'writeFile'")])
        activities = ModelStepActivities(model=model, file_store=FileStore(tmp_path))

        with pytest.raises(ToolError, match="Error in model output: Invalid arguments"):
            await activities.take_first_step(step_input(Node(id="n", tools=["writeFile"])))

    async def test_unknown_tool(self, tmp_path):
        model = FakeModel([tool_response(ToolCallPart(tool_call_id="c", tool_name="teleport", input={}))])
        activities = ModelStepActivities(model=model, file_store=FileStore(tmp_path))

        with pytest.raises(ToolError, match='Model called unknown tool "teleport"'):
            await activities.take_first_step(step_input(Node(id="n")))


class TestModelResolution:
    async def test_factory_receives_kind_and_input(self, tmp_path):
        model = FakeModel([tool_response(), tool_response()])
        seen = []

        def factory(kind, input):
            seen.append((kind, input.node.id))
            return model

        activities = ModelStepActivities(model=factory, file_store=FileStore(tmp_path))
        await activities.take_first_step(step_input(Node(id="n")))
        await activities.take_first_step(step_input(Node(id="m"), model_kind="test"))

        assert seen == [("ai", "n"), ("test", "m")]
        assert len(model.calls) == 2

    def test_default_model_follows_node_config(self, tmp_path):
        activities = ModelStepActivities(file_store=FileStore(tmp_path))
        node = Node(id="n", model=NodeModelConfig(name="gpt-4o", args={"temperature": 0.2}))

        model, args = activities._resolve_model(step_input(node))

        assert isinstance(model, LiteLLMModel)
        assert model.model == "gpt-4o"
        assert args == {"temperature": 0.2, "max_tokens": 1000}

    def test_default_model_without_name(self, tmp_path):
        activities = ModelStepActivities(file_store=FileStore(tmp_path))
        node = Node(id="n", model=NodeModelConfig(args={"max_tokens": 50}))

        model, args = activities._resolve_model(step_input(node))

        assert model.model == "gpt-4o-mini"
        assert args == {"temperature": 0.7, "max_tokens": 50}


class TestMakeToolCall:
    async def test_runs_the_tool(self, tmp_path):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="page")))
        activities = ModelStepActivities(model=FakeModel([]), file_store=FileStore(tmp_path), http_client=client)
        call = ToolCallPart(tool_call_id="c", tool_name="fetchUrl", input={"url": "https://example.com"})

        result = await activities.make_tool_call(
            ToolCallInput(run_id="run-1", tool_call=call, node=Node(id="n", tools=["fetchUrl"]))
        )

        assert result.tool_result.tool_call_id == "c"
        assert result.tool_result.output == "page"
        assert result.files == []

    async def test_reports_created_files(self, tmp_path):
        activities = ModelStepActivities(model=FakeModel([]), file_store=FileStore(tmp_path))

        result = await activities.make_tool_call(
            ToolCallInput(run_id="run-1", tool_call=WRITE_CALL, node=Node(id="n", tools=["writeFile"]))
        )

        [ref] = result.files
        assert result.tool_result.output["id"] == ref.id

    async def test_unimplemented(self, tmp_path):
        activities = ModelStepActivities(model=FakeModel([]), file_store=FileStore(tmp_path))
        call = ToolCallPart(tool_call_id="c", tool_name="fetchUrl", input={"url": "x"})

        with pytest.raises(ToolError, match='Unimplemented tool call "fetchUrl"'):
            await activities.make_tool_call(ToolCallInput(run_id="run-1", tool_call=call, node=Node(id="n")))

"""Tests for a whole graph run: signal, queries and start-up errors."""

import asyncio

from conftest import (
    ScriptedActivities,
    call_step,
    echo_activities,
    input_call,
    make_graph,
    resolve_call,
    tool_results,
)

from graphrunner.graph.input_broker import ProvidedInput
from graphrunner.graph.messages import ToolCallPart, ToolResultPart
from graphrunner.graph.model import Graph, Node, NodeType
from graphrunner.graph.run_state import FileRef, NodeStatus, RunState
from graphrunner.graph.workflow import GraphWorkflow
from graphrunner.runtime.activities import ActivityProxy, ToolCallResult

DEBATE_PANEL = {
    "nodes": [
        {"id": "user_input", "type": "input", "name": "Decision inputs"},
        {"id": "position_for", "type": "llm", "name": "Argue for"},
        {"id": "position_against", "type": "llm", "name": "Argue against"},
        {"id": "judge_synthesis", "type": "llm", "name": "Judge"},
        {"id": "red_team", "type": "llm", "name": "Red team"},
        {"id": "finalize", "type": "llm", "name": "Final memo"},
    ],
    "edges": [
        {"from": "user_input", "to": "position_for"},
        {"from": "user_input", "to": "position_against"},
        {"from": "position_for", "to": "judge_synthesis"},
        {"from": "position_against", "to": "judge_synthesis"},
        {"from": "judge_synthesis", "to": "red_team"},
        {"from": "judge_synthesis", "to": "finalize"},
        {"from": "red_team", "to": "finalize"},
    ],
}


def _workflow(activities, run_id="run-1") -> GraphWorkflow:
    return GraphWorkflow(run_id=run_id, activities=ActivityProxy(activities))


async def _wait_until(predicate):
    for _ in range(1000):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestRun:
    async def test_runs_debate_panel(self):
        graph = Graph.model_validate(DEBATE_PANEL)
        state = await _workflow(echo_activities()).run(graph)

        assert state.error is None
        assert state.outputs == {
            node.id: {"type": "text", "text": f"Output from test node '{node.id}'"}
            for node in graph.nodes
        }
        assert state.is_complete()

    async def test_prompt_reaches_every_step(self, diamond_graph):
        activities = echo_activities()
        await _workflow(activities).run(diamond_graph, prompt=42)
        assert {i.prompt for i in activities.step_inputs} == {42}

    async def test_invalid_resume_returns_error_state(self, diamond_graph):
        activities = echo_activities()
        prior = RunState(run_id="prior", status={"A": NodeStatus.ERROR})

        state = await _workflow(activities).run(diamond_graph, from_node="D", initial=prior)

        assert state.error == "Cannot start from node D: upstream node A is not done (status: error)"
        assert state.status == {}
        assert activities.step_inputs == []

    async def test_invalid_graph_returns_error_state(self):
        graph = make_graph(["A"], [("A", "missing")])
        state = await _workflow(echo_activities()).run(graph)
        assert state.error == "Invalid graph: Edge target 'missing' not found"


class TestSignalAndQueries:
    async def test_input_round_trip(self):
        graph = make_graph([Node(id="ask", type=NodeType.INPUT), "next"], [("ask", "next")])

        async def step(input):
            if input.node.id != "ask":
                return call_step(resolve_call(data={"seen": input.inputs["ask"]["data"]}))
            answers = tool_results(input)
            if not answers:
                return call_step(input_call("topic"))
            return call_step(resolve_call(data={"topic": answers[0].output}))

        workflow = _workflow(ScriptedActivities(step))
        task = asyncio.create_task(workflow.run(graph))
        await _wait_until(lambda: workflow.get_needed_input())

        [needed] = workflow.get_needed_input()
        assert needed.node_id == "ask"
        assert workflow.get_node_statuses() == {"ask": "awaiting", "next": "pending"}

        workflow.receive_input([ProvidedInput.answer(needed, "rivers")])
        state = await task

        assert state.outputs["next"]["data"] == {"seen": {"topic": "rivers"}}
        assert workflow.get_needed_input() == []

    async def test_queries_return_copies(self, diamond_graph):
        workflow = _workflow(echo_activities())
        await workflow.run(diamond_graph)

        output = workflow.get_node_output("A")
        output["text"] = "changed"
        assert workflow.get_node_output("A")["text"] == "Output from test node 'A'"

        statuses = workflow.get_node_statuses()
        statuses["A"] = NodeStatus.ERROR
        assert workflow.state.status["A"] == NodeStatus.DONE

        assert workflow.get_node_output("missing") is None

    async def test_transcripts_by_offset(self, diamond_graph):
        workflow = _workflow(echo_activities())
        await workflow.run(diamond_graph)

        everything = workflow.get_transcripts()
        assert [nid for nid, _ in everything[:1]] == ["A"]
        assert len(everything) == 4
        assert workflow.get_transcripts(3) == everything[3:]
        assert workflow.get_transcripts(10) == []

    async def test_files_query(self):
        graph = make_graph(["A"], [])
        ref = FileRef(id="f1", run_id="run-1", node_id="A", uri="file:///tmp/f", filename="f.txt")

        async def step(input):
            if not tool_results(input):
                return call_step(ToolCallPart(tool_call_id="c1", tool_name="writeFile", input={}))
            return call_step(resolve_call())

        async def tool_call(input):
            return ToolCallResult(
                tool_result=ToolResultPart(tool_call_id="c1", tool_name="writeFile", output={"id": "f1"}),
                files=[ref],
            )

        workflow = _workflow(ScriptedActivities(step, tool_call))
        await workflow.run(graph)

        assert workflow.get_files() == {"f1": ref}

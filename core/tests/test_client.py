"""Tests for the workflow client: blocking runs and event streams."""

import asyncio

import pytest
from conftest import (
    ScriptedActivities,
    call_step,
    echo_activities,
    input_call,
    make_graph,
    resolve_call,
    text_step,
    tool_results,
)

from graphrunner.graph.input_broker import ProvidedInput
from graphrunner.graph.model import Node, NodeType
from graphrunner.runtime.client import EventType, GraphEvent, GraphWorkflowClient
from graphrunner.runtime.host import GraphExecutionHost

FIELDS = ["proposal", "alternatives", "criteria"]


def input_node_activities() -> ScriptedActivities:
    """The input node asks for every field at once, then resolves with the answers."""

    async def step(input):
        if input.node.type != NodeType.INPUT:
            return call_step(resolve_call(data={"seen": sorted(input.inputs)}))
        answers = tool_results(input)
        if not answers:
            return call_step(*(input_call(name) for name in FIELDS))
        return call_step(
            resolve_call(
                data={a.tool_call_id.removeprefix("input-"): a.output for a in answers},
                message="Collected and structured user inputs",
            )
        )

    return ScriptedActivities(step)


def make_client(activities, **kwargs) -> GraphWorkflowClient:
    kwargs.setdefault("input_poll_interval", 0.01)
    kwargs.setdefault("poll_interval", 0.01)
    return GraphWorkflowClient(GraphExecutionHost(activities), **kwargs)


# ---- run_workflow ----


class TestRunWorkflow:
    async def test_collects_input_once_for_all_requests(self):
        graph = make_graph([Node(id="user_input", type=NodeType.INPUT), "next"], [("user_input", "next")])
        calls = []

        async def collect(needed):
            calls.append(needed)
            return [ProvidedInput.answer(n, f"mock value for {n.name}") for n in needed]

        client = make_client(input_node_activities(), collect_input=collect)
        state = await client.run_workflow(graph, prompt="Test prompt")

        assert state.outputs["user_input"] == {
            "message": "Collected and structured user inputs",
            "data": {name: f"mock value for {name}" for name in FIELDS},
        }
        assert state.outputs["next"]["data"] == {"seen": ["user_input"]}
        assert len(calls) == 1
        assert [n.prompt for n in calls[0]] == [f"Enter {name}" for name in FIELDS]

    async def test_needs_a_collector_when_input_is_requested(self):
        graph = make_graph([Node(id="user_input", type=NodeType.INPUT)], [])
        client = make_client(input_node_activities())

        with pytest.raises(RuntimeError, match="no input collector"):
            await client.run_workflow(graph, workflow_id="wf-1")

        await client.host.shutdown()

    async def test_uses_id_base(self, diamond_graph):
        client = make_client(echo_activities(), id_base="test-run-")
        handle = await client.start(diamond_graph)
        assert handle.workflow_id.startswith("test-run-")
        await handle.result()


# ---- events ----


class TestEvents:
    async def test_finished_run_is_emitted_once(self, diamond_graph):
        client = make_client(echo_activities())
        handle = await client.start(diamond_graph, workflow_id="wf-1")
        await handle.result()

        events = [event async for event in client.events("wf-1")]

        assert [e.type for e in events] == [
            EventType.STATUS,
            EventType.OUTPUT,
            EventType.OUTPUT,
            EventType.OUTPUT,
            EventType.OUTPUT,
            EventType.TRANSCRIPT,
        ]
        assert events[0].payload == {n: "done" for n in "ABCD"}
        assert events[1].payload == ["A", {"type": "text", "text": "Output from test node 'A'"}]
        assert sorted(entry[0] for entry in events[-1].payload) == ["A", "B", "C", "D"]

    async def test_follows_live_run(self, diamond_graph):
        gate = asyncio.Event()

        async def step(input):
            if input.node.id == "B":
                await gate.wait()
            return text_step(f"Output from test node '{input.node.id}'")

        client = make_client(ScriptedActivities(step), events_timeout=5)
        await client.start(diamond_graph, workflow_id="wf-1")

        events = []
        async for event in client.events("wf-1"):
            events.append(event)
            if event.type == EventType.STATUS and event.payload.get("B") == "running":
                gate.set()

        statuses = [e.payload for e in events if e.type == EventType.STATUS]
        assert statuses[-1] == {n: "done" for n in "ABCD"}
        outputs = [e.payload[0] for e in events if e.type == EventType.OUTPUT]
        assert sorted(outputs) == ["A", "B", "C", "D"]
        transcript_ids = [entry[0] for e in events if e.type == EventType.TRANSCRIPT for entry in e.payload]
        assert sorted(transcript_ids) == ["A", "B", "C", "D"]

    async def test_reports_needed_input(self):
        graph = make_graph([Node(id="user_input", type=NodeType.INPUT)], [])
        client = make_client(input_node_activities(), events_timeout=5)
        handle = await client.start(graph, workflow_id="wf-1")

        needed_events = []
        async for event in client.events("wf-1"):
            if event.type == EventType.NEEDED:
                needed_events.append(event.payload)
                if event.payload:
                    answers = [
                        ProvidedInput.model_validate(
                            {"for": {"name": n["name"], "node_id": n["node_id"]}, "value": n["name"]}
                        )
                        for n in event.payload
                    ]
                    await handle.receive_input(answers)

        assert [n["name"] for n in needed_events[0]] == FIELDS
        assert needed_events[-1] == []
        assert (await handle.result()).outputs["user_input"]["data"] == {n: n for n in FIELDS}

    async def test_unknown_workflow_yields_nothing(self):
        client = make_client(echo_activities())
        assert [event async for event in client.events("missing")] == []


def test_event_to_sse():
    event = GraphEvent(type=EventType.OUTPUT, payload=["A", {"n": 1}])
    assert event.to_sse() == 'event: output\ndata: ["A",{"n":1}]\n\n'

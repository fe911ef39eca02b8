"""Tests for run-state initialization, fresh and resumed."""

import pytest
from conftest import make_graph

from graphrunner.graph.messages import Message
from graphrunner.graph.run_state import (
    FileRef,
    InvalidInputError,
    NodeStatus,
    RunState,
    init_run_state,
)


class TestFreshRun:
    def test_counts_incoming_edges(self, diamond_graph):
        state = init_run_state("run-1", diamond_graph)

        assert state.ready == ["A"]
        assert state.pending_in == {"A": 0, "B": 1, "C": 1, "D": 2}
        assert all(s == NodeStatus.PENDING for s in state.status.values())
        assert state.outputs == {}
        assert state.transcripts == []

    def test_ready_is_sorted(self):
        graph = make_graph(["c", "a", "b"], [])
        assert init_run_state("run-1", graph).ready == ["a", "b", "c"]

    def test_keeps_prompt(self, diamond_graph):
        state = init_run_state("run-1", diamond_graph, prompt="hello")
        assert state.prompt == "hello"


def _prior(graph, statuses, outputs=None, files=None, transcripts=None) -> RunState:
    return RunState(
        run_id="prior",
        status={nid: NodeStatus(s) for nid, s in statuses.items()},
        outputs=outputs or {},
        files=files or {},
        transcripts=transcripts or [],
    )


class TestResume:
    def test_reuses_upstream_and_recomputes_downstream(self, diamond_graph):
        prior = _prior(
            diamond_graph,
            {"A": "done", "B": "done", "C": "done", "D": "error"},
            outputs={"A": {"a": 1}, "B": {"b": 1}, "C": {"c": 1}, "D": {"error": "boom"}},
        )

        state = init_run_state("run-2", diamond_graph, from_node="B", prior=prior)

        # C is neither upstream nor downstream of B, its result is reused
        assert state.status == {"A": "done", "B": "pending", "C": "done", "D": "pending"}
        assert state.outputs == {"A": {"a": 1}, "C": {"c": 1}}
        assert state.pending_in == {"A": 0, "B": 0, "C": 0, "D": 1}
        assert state.ready == ["B"]

    def test_outputs_are_copies(self, diamond_graph):
        prior = _prior(diamond_graph, {"A": "done"}, outputs={"A": {"items": [1]}})
        state = init_run_state("run-2", diamond_graph, from_node="B", prior=prior)
        state.outputs["A"]["items"].append(2)
        assert prior.outputs["A"] == {"items": [1]}

    def test_resume_from_root_reruns_everything(self, diamond_graph):
        prior = _prior(diamond_graph, {n: "done" for n in "ABCD"}, outputs={n: {"x": n} for n in "ABCD"})
        state = init_run_state("run-2", diamond_graph, from_node="A", prior=prior)
        assert state.ready == ["A"]
        assert state.outputs == {}
        assert state.pending_in == {"A": 0, "B": 1, "C": 1, "D": 2}

    def test_sibling_that_was_not_done_runs_again(self, diamond_graph):
        prior = _prior(
            diamond_graph,
            {"A": "done", "B": "done", "C": "error", "D": "pending"},
            outputs={"A": {"a": 1}, "B": {"b": 1}, "C": {"error": "x"}},
        )
        state = init_run_state("run-2", diamond_graph, from_node="B", prior=prior)
        assert state.ready == ["B", "C"]
        assert state.pending_in["D"] == 2

    def test_copies_files_and_transcripts_of_reused_nodes(self, diamond_graph):
        kept = FileRef(id="f1", run_id="prior", node_id="A", uri="file:///tmp/a", filename="a.txt")
        dropped = FileRef(id="f2", run_id="prior", node_id="B", uri="file:///tmp/b", filename="b.txt")
        prior = _prior(
            diamond_graph,
            {"A": "done", "B": "done"},
            outputs={"A": {"a": 1}, "B": {"b": 1}},
            files={"f1": kept, "f2": dropped},
            transcripts=[("A", [Message.system("a")]), ("B", [Message.system("b")])],
        )

        state = init_run_state("run-2", diamond_graph, from_node="B", prior=prior)

        assert list(state.files) == ["f1"]
        assert [nid for nid, _ in state.transcripts] == ["A"]

    def test_requires_prior_state(self, diamond_graph):
        with pytest.raises(InvalidInputError, match="prior state must be supplied"):
            init_run_state("run-2", diamond_graph, from_node="B")

    def test_rejects_unknown_node(self, diamond_graph):
        with pytest.raises(InvalidInputError, match="node not found"):
            init_run_state("run-2", diamond_graph, from_node="Z", prior=_prior(diamond_graph, {}))

    def test_rejects_upstream_not_done(self, diamond_graph):
        prior = _prior(diamond_graph, {"A": "error"}, outputs={"A": {"error": "boom"}})
        with pytest.raises(InvalidInputError) as exc_info:
            init_run_state("run-2", diamond_graph, from_node="D", prior=prior)
        assert str(exc_info.value) == (
            "Cannot start from node D: upstream node A is not done (status: error)"
        )
        assert exc_info.value.details["node_id"] == "A"

    def test_rejects_upstream_without_output(self, diamond_graph):
        prior = _prior(diamond_graph, {"A": "done"})
        with pytest.raises(InvalidInputError, match="upstream node A has no output"):
            init_run_state("run-2", diamond_graph, from_node="B", prior=prior)


def test_is_complete_counts_skipped_as_finished():
    state = RunState(run_id="r", status={"A": NodeStatus.DONE, "B": NodeStatus.SKIPPED})
    assert state.is_complete()
    state.status["C"] = NodeStatus.ERROR
    assert not state.is_complete()

"""
Run State - the mutable snapshot of one graph execution.

A RunState is built once per run by :func:`init_run_state` (fresh or
resumed from a node of a prior run), mutated in place by the scheduler
and the node executors it owns, and handed back to the caller at the end.
It is also what the workflow's queries read from.
"""

import copy
import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from graphrunner.graph.messages import Message
from graphrunner.graph.model import Graph

logger = logging.getLogger(__name__)


class NodeStatus(StrEnum):
    PENDING = "pending"
    AWAITING = "awaiting"  # Suspended on a human input request
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({NodeStatus.DONE, NodeStatus.SKIPPED})


class FileKind(StrEnum):
    GENERATED = "generated"
    UPLOAD = "upload"
    EXTERNAL = "external"


class FileRef(BaseModel):
    """A file artifact created during a run. Immutable once created."""

    id: str
    run_id: str
    node_id: str | None = None
    kind: FileKind = FileKind.GENERATED
    uri: str
    filename: str
    media_type: str = "application/octet-stream"
    bytes: int = 0
    sha256: str = ""
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    metadata: dict[str, Any] | None = None

    model_config = {"frozen": True}


Transcript = list[Message]


class RunState(BaseModel):
    """
    Everything one run knows about itself.

    ``transcripts`` is append-only so offsets handed out to pollers stay valid.
    ``error`` is a run-level initialization failure; a single node's failure
    lives in ``status``/``outputs`` instead.
    """

    run_id: str
    prompt: Any = None
    status: dict[str, NodeStatus] = Field(default_factory=dict)
    pending_in: dict[str, int] = Field(default_factory=dict)
    ready: list[str] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    transcripts: list[tuple[str, Transcript]] = Field(default_factory=list)
    files: dict[str, FileRef] = Field(default_factory=dict)
    error: str | None = None

    def is_complete(self) -> bool:
        """True when every node is done or skipped."""
        return all(s in TERMINAL_STATUSES for s in self.status.values())

    def add_transcript(self, node_id: str, messages: Transcript) -> None:
        self.transcripts.append((node_id, list(messages)))

    def add_files(self, files: list[FileRef]) -> None:
        for ref in files:
            self.files[ref.id] = ref


class InvalidInputError(Exception):
    """A run cannot start from the requested point."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


def init_run_state(
    run_id: str,
    graph: Graph,
    prompt: Any = None,
    from_node: str | None = None,
    prior: RunState | None = None,
) -> RunState:
    """
    Build the initial state of a run.

    Without ``from_node`` every node starts pending and the ready queue holds
    the in-degree-0 nodes. With ``from_node`` the run reuses the done results
    of every node that is not downstream of ``from_node`` and recomputes the
    rest.

    Args:
        run_id: Id of the new run
        graph: The graph to run
        prompt: Optional free-form user prompt made available to every node
        from_node: Node to resume from
        prior: The state of the run being resumed

    Returns:
        The new RunState

    Raises:
        InvalidInputError: If the resume point is not usable
    """
    state = RunState(run_id=run_id, prompt=prompt)
    for node in graph.nodes:
        state.status[node.id] = NodeStatus.PENDING
        state.pending_in[node.id] = 0

    if from_node is None:
        for edge in graph.edges:
            state.pending_in[edge.target] += 1
        state.ready = sorted(nid for nid in graph.node_ids() if state.pending_in[nid] == 0)
        return state

    if prior is None:
        raise InvalidInputError("prior state must be supplied when from_node is provided")
    if graph.get_node(from_node) is None:
        raise InvalidInputError(f"Cannot start from node {from_node}: node not found in graph")

    upstream = graph.upstream(from_node)
    downstream = graph.downstream(from_node)
    siblings = {nid for nid in graph.node_ids() if nid not in upstream and nid not in downstream}

    for uid in sorted(upstream):
        prior_status = prior.status.get(uid)
        if prior_status != NodeStatus.DONE:
            raise InvalidInputError(
                f"Cannot start from node {from_node}: upstream node {uid} "
                f"is not done (status: {prior_status})",
                details={"node_id": uid, "status": prior_status},
            )
        if prior.outputs.get(uid) is None:
            raise InvalidInputError(
                f"Cannot start from node {from_node}: upstream node {uid} has no output",
                details={"node_id": uid},
            )

    reused = upstream | siblings
    for nid in graph.node_ids():
        if nid in reused and prior.status.get(nid) == NodeStatus.DONE:
            state.status[nid] = NodeStatus.DONE
            state.outputs[nid] = copy.deepcopy(prior.outputs.get(nid))

    for ref in prior.files.values():
        if ref.node_id is not None and state.status.get(ref.node_id) == NodeStatus.DONE:
            state.files[ref.id] = ref

    for edge in graph.edges:
        if state.status.get(edge.source) == NodeStatus.DONE:
            continue
        state.pending_in[edge.target] += 1

    for nid, transcript in prior.transcripts:
        if nid in reused:
            state.transcripts.append((nid, copy.deepcopy(transcript)))

    state.ready = sorted(
        nid
        for nid in graph.node_ids()
        if state.pending_in[nid] == 0 and state.status[nid] == NodeStatus.PENDING
    )

    logger.info(
        f"Resuming from '{from_node}': reusing {len(state.outputs)} node(s), "
        f"{len(state.ready)} ready"
    )
    return state

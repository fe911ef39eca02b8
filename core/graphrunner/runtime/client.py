"""
Graph Workflow Client - the caller's side of graph runs.

Two ways to consume a run:

1. ``run_workflow()``: start a run and block until it finishes, answering
   input requests through a caller-supplied collector as they appear.
2. ``events()``: observe a running workflow by polling its queries and
   yielding only what changed since the previous poll.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from graphrunner.graph.input_broker import NeededInput, ProvidedInput
from graphrunner.graph.model import Graph
from graphrunner.graph.run_state import NodeStatus, RunState
from graphrunner.runtime.host import (
    ExecutionStatus,
    GraphExecutionHost,
    WorkflowHandle,
    WorkflowNotFoundError,
)

logger = logging.getLogger(__name__)

InputCollector = Callable[[list[NeededInput]], Awaitable[list[ProvidedInput]]]


class EventType(StrEnum):
    RUN = "run"
    STATUS = "status"
    OUTPUT = "output"
    TRANSCRIPT = "transcript"
    NEEDED = "needed"
    FILES = "files"
    ERROR = "error"
    DONE = "done"


class GraphEvent(BaseModel):
    """A named event with a JSON payload."""

    type: EventType
    payload: Any = None

    def to_sse(self) -> str:
        """Serialize as a Server-Sent-Events frame."""
        data = json.dumps(self.payload, separators=(",", ":"), default=str)
        return f"event: {self.type}\ndata: {data}\n\n"


class GraphWorkflowClient:
    """
    Starts graph runs on a host and follows them.

    Args:
        host: The execution host runs are started on
        collect_input: Answers input requests during ``run_workflow``
        id_base: Prefix of generated workflow ids
        poll_interval: Seconds between polls in ``events``
        input_poll_interval: Seconds between needed-input polls in ``run_workflow``
        events_timeout: Longest time ``events`` follows a run
    """

    def __init__(
        self,
        host: GraphExecutionHost,
        collect_input: InputCollector | None = None,
        id_base: str = "run-graph-",
        poll_interval: float = 0.5,
        input_poll_interval: float = 0.8,
        events_timeout: float = 600.0,
    ):
        self.host = host
        self.collect_input = collect_input
        self.id_base = id_base
        self.poll_interval = poll_interval
        self.input_poll_interval = input_poll_interval
        self.events_timeout = events_timeout

    async def start(
        self,
        graph: Graph,
        prompt: Any = None,
        workflow_id: str | None = None,
        from_node: str | None = None,
        initial: RunState | None = None,
        model_kind: str | None = None,
        image_model_kind: str | None = None,
    ) -> WorkflowHandle:
        return await self.host.start_workflow(
            graph,
            workflow_id=workflow_id or f"{self.id_base}{uuid.uuid4().hex[:12]}",
            prompt=prompt,
            from_node=from_node,
            initial=initial,
            model_kind=model_kind,
            image_model_kind=image_model_kind,
        )

    async def provide_input(self, workflow_id: str, provided: list[ProvidedInput]) -> None:
        await self.host.get_handle(workflow_id).receive_input(provided)

    async def run_workflow(
        self,
        graph: Graph,
        prompt: Any = None,
        workflow_id: str | None = None,
        **start_kwargs: Any,
    ) -> RunState:
        """
        Run a graph to completion, answering input requests along the way.

        Returns:
            The final RunState

        Raises:
            WorkflowFailedError: If the run failed
            RuntimeError: If input is needed but no collector is configured
        """
        handle = await self.start(graph, prompt=prompt, workflow_id=workflow_id, **start_kwargs)
        logger.info(f"Started workflow {handle.workflow_id}")

        result_task = asyncio.create_task(handle.result())
        needed_task: asyncio.Task | None = None
        try:
            while True:
                needed_task = asyncio.create_task(self._poll_until_needs_input(handle))
                done, _ = await asyncio.wait(
                    {result_task, needed_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if result_task in done:
                    return result_task.result()

                needed = needed_task.result()
                if self.collect_input is None:
                    raise RuntimeError(
                        f"Workflow {handle.workflow_id} needs input but no input collector is set"
                    )
                provided = await self.collect_input(needed)
                await handle.receive_input(provided)
        finally:
            for task in (result_task, needed_task):
                if task is not None and not task.done():
                    task.cancel()
            pending = [t for t in (result_task, needed_task) if t is not None]
            await asyncio.gather(*pending, return_exceptions=True)

    async def _poll_until_needs_input(self, handle: WorkflowHandle) -> list[NeededInput]:
        while True:
            needed = await handle.get_needed_input()
            if needed:
                return needed
            await asyncio.sleep(self.input_poll_interval)

    async def events(self, workflow_id: str) -> AsyncIterator[GraphEvent]:
        """
        Follow a workflow and yield what changes.

        Ends silently when the workflow is unknown, failed or terminated,
        once every node is done or skipped, after the final state of a
        closed run was emitted, or when ``events_timeout`` expires.
        Transcript entries are fetched by offset, so none is emitted twice.
        """
        handle = self.host.get_handle(workflow_id)
        try:
            description = await handle.describe()
        except WorkflowNotFoundError:
            return
        if description.status in (ExecutionStatus.FAILED, ExecutionStatus.TERMINATED):
            return

        last_statuses: dict[str, NodeStatus] = {}
        last_needed: list[str] = []
        was_awaiting = False
        transcript_offset = 0
        seen_files: set[str] = set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.events_timeout
        while loop.time() < deadline:
            try:
                finished = (await handle.describe()).status != ExecutionStatus.RUNNING
                statuses = await handle.get_node_statuses()

                changed = [nid for nid, s in statuses.items() if last_statuses.get(nid) != s]
                if changed:
                    yield GraphEvent(type=EventType.STATUS, payload={k: str(v) for k, v in statuses.items()})
                for node_id in changed:
                    if statuses[node_id] in (NodeStatus.DONE, NodeStatus.ERROR):
                        output = await handle.get_node_output(node_id)
                        yield GraphEvent(type=EventType.OUTPUT, payload=[node_id, output])

                awaiting = any(s == NodeStatus.AWAITING for s in statuses.values())
                if awaiting or was_awaiting:
                    needed = await handle.get_needed_input()
                    needed_ids = [n.node_id for n in needed]
                    if needed_ids != last_needed:
                        yield GraphEvent(
                            type=EventType.NEEDED,
                            payload=[n.model_dump(mode="json") for n in needed],
                        )
                        last_needed = needed_ids
                was_awaiting = awaiting

                running = any(s == NodeStatus.RUNNING for s in statuses.values())
                if changed or running or finished:
                    entries = await handle.get_transcripts(transcript_offset)
                    if entries:
                        transcript_offset += len(entries)
                        yield GraphEvent(
                            type=EventType.TRANSCRIPT,
                            payload=[
                                [nid, [m.model_dump(mode="json") for m in messages]]
                                for nid, messages in entries
                            ],
                        )

                files = await handle.get_files()
                new_files = {fid: ref for fid, ref in files.items() if fid not in seen_files}
                if new_files:
                    seen_files.update(new_files)
                    yield GraphEvent(
                        type=EventType.FILES,
                        payload={fid: ref.model_dump(mode="json") for fid, ref in new_files.items()},
                    )
            except WorkflowNotFoundError:
                return

            all_done = bool(statuses) and all(
                s in (NodeStatus.DONE, NodeStatus.SKIPPED) for s in statuses.values()
            )
            if finished or all_done:
                return

            last_statuses = statuses
            await asyncio.sleep(self.poll_interval)

        logger.warning(f"Stopped following workflow {workflow_id} after {self.events_timeout}s")

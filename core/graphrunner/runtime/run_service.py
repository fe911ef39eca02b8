"""
Run Service - the run lifecycle as a UI sees it.

- ``start_run``: start a graph run (optionally from a node of a prior run)
  and persist its record
- ``submit_input``: forward human answers to the run
- ``stream_run_events``: replay a finished run in one ``run`` event, or
  follow a live one and persist its results when the stream ends

Every stream ends with a ``done`` event. An ``error`` event precedes it
when the run did not complete or could not be followed.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from graphrunner.graph.input_broker import ProvidedInput
from graphrunner.graph.model import Graph
from graphrunner.graph.run_state import InvalidInputError, NodeStatus
from graphrunner.runtime.client import EventType, GraphEvent, GraphWorkflowClient
from graphrunner.runtime.host import ExecutionStatus, WorkflowFailedError, WorkflowNotFoundError
from graphrunner.storage.run_store import RunRecord, RunRecordStatus, RunStore

logger = logging.getLogger(__name__)

MASKED_FIELDS = ("statuses", "transcripts", "outputs")

# Seconds to wait for an execution to close after its event stream ended
CLOSE_GRACE_PERIOD = 5.0


class RunNotFoundError(Exception):
    """No run record with the given id (for the given graph)."""


def masked(record: RunRecord, *extra: str) -> dict[str, Any]:
    """A record payload without its heavy fields."""
    payload = record.model_dump(mode="json")
    for name in (*MASKED_FIELDS, *extra):
        payload[name] = None
    return payload


def overall_status(statuses: dict[str, str]) -> RunRecordStatus:
    values = list(statuses.values())
    if values and all(s in (NodeStatus.DONE, NodeStatus.SKIPPED) for s in values):
        return RunRecordStatus.DONE
    if any(s == NodeStatus.ERROR for s in values):
        return RunRecordStatus.ERROR
    return RunRecordStatus.RUNNING


class RunService:
    """Starts, feeds and streams persisted graph runs."""

    def __init__(self, client: GraphWorkflowClient, store: RunStore, id_base: str = "team-run-"):
        self.client = client
        self.store = store
        self.id_base = id_base

    async def start_run(
        self,
        graph_id: str,
        graph: Graph,
        prompt: Any = None,
        owner_id: str | None = None,
        from_node: str | None = None,
        from_run: str | None = None,
        model_kind: str | None = None,
        image_model_kind: str | None = None,
    ) -> RunRecord:
        """
        Start a run and persist its record.

        Raises:
            InvalidInputError: If ``from_node`` is given without ``from_run``
            RunNotFoundError: If ``from_run`` does not exist
        """
        initial = None
        if from_node:
            if not from_run:
                raise InvalidInputError("A run id is required to run from a node")
            prior = await self.store.get(from_run)
            if prior is None:
                raise RunNotFoundError(f"Run '{from_run}' not found")
            initial = prior.to_run_state()

        handle = await self.client.start(
            graph,
            prompt=prompt,
            workflow_id=f"{self.id_base}{graph_id}-{uuid.uuid4().hex[:8]}",
            from_node=from_node,
            initial=initial,
            model_kind=model_kind,
            image_model_kind=image_model_kind,
        )
        record = RunRecord(
            id=handle.run_id,
            graph_id=graph_id,
            owner_id=owner_id,
            workflow_id=handle.workflow_id,
            graph=graph,
            prompt=prompt,
            from_node=from_node,
        )
        logger.info(f"Run {record.id} of graph {graph_id} started as {record.workflow_id}")
        return await self.store.create(record)

    async def submit_input(self, graph_id: str, run_id: str, inputs: list[ProvidedInput]) -> None:
        record = await self.store.get(run_id)
        if record is None or record.graph_id != graph_id:
            raise RunNotFoundError(f"Run '{run_id}' of graph '{graph_id}' not found")
        await self.client.provide_input(record.workflow_id, inputs)

    async def stream_latest_run_events(self, graph_id: str) -> AsyncIterator[GraphEvent]:
        record = await self.store.get_latest(graph_id)
        async for event in self._stream(record):
            yield event

    async def stream_run_events(self, run_id: str) -> AsyncIterator[GraphEvent]:
        record = await self.store.get(run_id)
        async for event in self._stream(record):
            yield event

    async def _stream(self, record: RunRecord | None) -> AsyncIterator[GraphEvent]:
        try:
            if record is None:
                yield GraphEvent(type=EventType.RUN, payload=None)
            elif record.is_finished():
                yield GraphEvent(type=EventType.RUN, payload=record.model_dump(mode="json"))
            else:
                yield GraphEvent(type=EventType.RUN, payload=masked(record))
                async for event in self._follow(record):
                    yield event
        except Exception as e:
            logger.error(f"Error streaming run events: {e}", exc_info=True)
            yield GraphEvent(type=EventType.ERROR, payload={"error": str(e)})
        yield GraphEvent(type=EventType.DONE, payload={})

    async def _follow(self, record: RunRecord) -> AsyncIterator[GraphEvent]:
        async for event in self.client.events(record.workflow_id):
            yield event

        handle = self.client.host.get_handle(record.workflow_id, record.id)
        try:
            description = await handle.describe()
        except WorkflowNotFoundError:
            # The execution is gone (e.g. the host restarted); keep what was persisted
            logger.warning(f"Run {record.id} is no longer known to the execution host")
            updated = await self.store.update(record.id, {"status": RunRecordStatus.ERROR})
            yield GraphEvent(type=EventType.ERROR, payload={"error": f"Run '{record.id}' is no longer running"})
            if updated is not None:
                yield GraphEvent(type=EventType.RUN, payload=masked(updated, "graph"))
            return

        if description.status == ExecutionStatus.RUNNING:
            # Every node may be finished while the execution is still closing
            try:
                await asyncio.wait_for(handle.result(), timeout=CLOSE_GRACE_PERIOD)
            except (TimeoutError, WorkflowFailedError):
                pass
            description = await handle.describe()

        if description.status == ExecutionStatus.RUNNING:
            # Stopped following before the run closed; it stays open for later streams
            yield GraphEvent(type=EventType.RUN, payload=masked(record, "graph"))
            return

        if description.status == ExecutionStatus.COMPLETED:
            state = await handle.result()
            error = state.error
            status = RunRecordStatus.ERROR if error else overall_status(state.status)
            patch = {
                "status": status,
                "statuses": state.status,
                "outputs": state.outputs,
                "transcripts": state.transcripts,
                "files": {**(record.files or {}), **state.files},
            }
        else:
            error = description.error or f"Workflow '{record.workflow_id}' {description.status}"
            statuses = await handle.get_node_statuses()
            outputs = {}
            for node_id in statuses:
                output = await handle.get_node_output(node_id)
                if output is not None:
                    outputs[node_id] = output
            patch = {
                "status": RunRecordStatus.ERROR,
                "statuses": statuses,
                "outputs": outputs,
                "transcripts": await handle.get_transcripts(0),
                "files": {**(record.files or {}), **(await handle.get_files())},
            }

        if error:
            logger.error(f"Run {record.id} ended with an error: {error}")
            yield GraphEvent(type=EventType.ERROR, payload={"error": error})

        # Persist so the run can be served without the execution host
        updated = await self.store.update(record.id, patch)
        if updated is None:
            raise RunNotFoundError(f"Failed to update run '{record.id}'")

        yield GraphEvent(type=EventType.RUN, payload=masked(updated, "graph"))

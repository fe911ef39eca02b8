"""
Execution Host - runs graph workflows as background asyncio tasks.

Each started workflow gets a generated run id and is reachable through a
:class:`WorkflowHandle` by its workflow id:

- signal: ``receive_input``
- queries: ``get_needed_input``, ``get_node_statuses``, ``get_node_output``,
  ``get_transcripts``, ``get_files``
- lifecycle: ``describe``, ``terminate``, ``result``

The host is in-process: a run lives as long as the event loop that
started it. Durability across restarts comes from persisting the final
RunState (see ``graphrunner.storage``) and resuming from a node.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from graphrunner.graph.input_broker import NeededInput, ProvidedInput
from graphrunner.graph.messages import Message
from graphrunner.graph.model import Graph
from graphrunner.graph.run_state import FileRef, NodeStatus, RunState
from graphrunner.graph.workflow import GraphWorkflow
from graphrunner.observability import set_trace_context
from graphrunner.runtime.activities import (
    DEFAULT_START_TO_CLOSE_TIMEOUT,
    Activities,
    ActivityProxy,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


class ExecutionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


class WorkflowNotFoundError(Exception):
    """No execution is known under the given workflow id (and run id)."""


class WorkflowAlreadyStartedError(Exception):
    """An execution with the same workflow id is still running."""


class WorkflowFailedError(Exception):
    """The workflow did not return a result. The reason is ``__cause__``."""


@dataclass
class ExecutionDescription:
    workflow_id: str
    run_id: str
    status: ExecutionStatus
    started_at: datetime
    closed_at: datetime | None = None
    error: str | None = None


@dataclass
class _Execution:
    workflow_id: str
    run_id: str
    workflow: GraphWorkflow
    task: asyncio.Task | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = field(default_factory=datetime.now)
    closed_at: datetime | None = None
    result: RunState | None = None
    error: BaseException | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


class WorkflowHandle:
    """Typed access to one execution, looked up on every call."""

    def __init__(self, host: "GraphExecutionHost", workflow_id: str, run_id: str | None = None):
        self._host = host
        self.workflow_id = workflow_id
        self.run_id = run_id

    def _execution(self) -> _Execution:
        return self._host._lookup(self.workflow_id, self.run_id)

    # Signal

    async def receive_input(self, provided: list[ProvidedInput]) -> None:
        execution = self._execution()
        if execution.status != ExecutionStatus.RUNNING:
            raise WorkflowNotFoundError(
                f"Workflow '{self.workflow_id}' is {execution.status}, cannot signal"
            )
        execution.workflow.receive_input(provided)

    # Queries

    async def get_needed_input(self) -> list[NeededInput]:
        return self._execution().workflow.get_needed_input()

    async def get_node_statuses(self) -> dict[str, NodeStatus]:
        return self._execution().workflow.get_node_statuses()

    async def get_node_output(self, node_id: str) -> Any:
        return self._execution().workflow.get_node_output(node_id)

    async def get_transcripts(self, offset: int = 0) -> list[tuple[str, list[Message]]]:
        return self._execution().workflow.get_transcripts(offset)

    async def get_files(self) -> dict[str, FileRef]:
        return self._execution().workflow.get_files()

    # Lifecycle

    async def describe(self) -> ExecutionDescription:
        execution = self._execution()
        return ExecutionDescription(
            workflow_id=execution.workflow_id,
            run_id=execution.run_id,
            status=execution.status,
            started_at=execution.started_at,
            closed_at=execution.closed_at,
            error=str(execution.error) if execution.error else None,
        )

    async def terminate(self, reason: str | None = None) -> None:
        execution = self._execution()
        if execution.task is None or execution.task.done():
            return
        logger.info(f"Terminating workflow '{self.workflow_id}': {reason or 'no reason given'}")
        execution.task.cancel()
        await asyncio.gather(execution.task, return_exceptions=True)

    async def result(self) -> RunState:
        """
        Wait for the workflow's result.

        Raises:
            WorkflowFailedError: If the workflow failed or was terminated
        """
        execution = self._execution()
        await execution.done.wait()
        if execution.status == ExecutionStatus.COMPLETED and execution.result is not None:
            return execution.result
        raise WorkflowFailedError(
            f"Workflow '{execution.workflow_id}' {execution.status}"
        ) from execution.error


class GraphExecutionHost:
    """
    Starts and tracks graph workflow executions.

    Example:
        host = GraphExecutionHost(activities=ModelStepActivities(model))
        handle = await host.start_workflow(graph, workflow_id="demo")
        state = await handle.result()
    """

    def __init__(
        self,
        activities: Activities,
        start_to_close_timeout: float = DEFAULT_START_TO_CLOSE_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
    ):
        self.activities = activities
        self.start_to_close_timeout = start_to_close_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._executions: dict[str, list[_Execution]] = {}

    async def start_workflow(
        self,
        graph: Graph,
        workflow_id: str | None = None,
        prompt: Any = None,
        from_node: str | None = None,
        initial: RunState | None = None,
        model_kind: str | None = None,
        image_model_kind: str | None = None,
    ) -> WorkflowHandle:
        """
        Start a graph run in the background.

        Raises:
            WorkflowAlreadyStartedError: If ``workflow_id`` is still running
        """
        workflow_id = workflow_id or f"graph-run-{uuid.uuid4().hex[:12]}"
        history = self._executions.setdefault(workflow_id, [])
        if history and history[-1].status == ExecutionStatus.RUNNING:
            raise WorkflowAlreadyStartedError(f"Workflow '{workflow_id}' is already running")

        run_id = uuid.uuid4().hex
        proxy = ActivityProxy(
            self.activities,
            start_to_close_timeout=self.start_to_close_timeout,
            retry_policy=self.retry_policy,
        )
        workflow = GraphWorkflow(
            run_id=run_id,
            activities=proxy,
            model_kind=model_kind,
            image_model_kind=image_model_kind,
        )
        execution = _Execution(workflow_id=workflow_id, run_id=run_id, workflow=workflow)
        history.append(execution)

        execution.task = asyncio.create_task(
            self._run(execution, graph, prompt, from_node, initial),
            name=f"workflow:{workflow_id}",
        )
        execution.task.add_done_callback(lambda task: self._closed(execution, task))
        logger.info(f"Started workflow '{workflow_id}' (run {run_id})")
        return WorkflowHandle(self, workflow_id, run_id)

    def get_handle(self, workflow_id: str, run_id: str | None = None) -> WorkflowHandle:
        """Handle for a workflow id; lookups happen lazily on each call."""
        return WorkflowHandle(self, workflow_id, run_id)

    def _lookup(self, workflow_id: str, run_id: str | None) -> _Execution:
        history = self._executions.get(workflow_id)
        if not history:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
        if run_id is None:
            return history[-1]
        for execution in history:
            if execution.run_id == run_id:
                return execution
        raise WorkflowNotFoundError(f"Run '{run_id}' of workflow '{workflow_id}' not found")

    async def _run(
        self,
        execution: _Execution,
        graph: Graph,
        prompt: Any,
        from_node: str | None,
        initial: RunState | None,
    ) -> None:
        set_trace_context(workflow_id=execution.workflow_id, run_id=execution.run_id)
        try:
            execution.result = await execution.workflow.run(graph, prompt, from_node, initial)
            execution.status = ExecutionStatus.COMPLETED
            logger.info(f"Workflow '{execution.workflow_id}' completed")
        except asyncio.CancelledError:
            execution.status = ExecutionStatus.TERMINATED
            logger.info(f"Workflow '{execution.workflow_id}' terminated")
            raise
        except Exception as e:
            execution.status = ExecutionStatus.FAILED
            execution.error = e
            logger.error(f"Workflow '{execution.workflow_id}' failed: {e}", exc_info=True)

    @staticmethod
    def _closed(execution: _Execution, task: asyncio.Task) -> None:
        # A task cancelled before its first step never enters _run
        if task.cancelled() and execution.status == ExecutionStatus.RUNNING:
            execution.status = ExecutionStatus.TERMINATED
        execution.closed_at = datetime.now()
        execution.done.set()

    async def shutdown(self) -> None:
        """Terminate every running execution."""
        running = [
            execution.task
            for history in self._executions.values()
            for execution in history
            if execution.task is not None and not execution.task.done()
        ]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info(f"Execution host stopped ({len(running)} execution(s) terminated)")

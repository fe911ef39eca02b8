"""
Wave Scheduler - runs every ready node concurrently until the run ends.

A node becomes ready when all of its incoming edges are resolved (its
``pending_in`` count reaches zero). Ready nodes are dispatched in sorted
id order; their completions are processed as they arrive, each one
releasing its direct dependents.

The run ends when nothing is left in flight. A failing node ends it
early: the node is marked ``error`` and every other status is left where
it was, so the run can later be resumed from the failed node.
"""

import asyncio
import logging
from typing import Any

from graphrunner.graph.model import Edge, Graph
from graphrunner.graph.node_executor import NodeExecutor
from graphrunner.graph.run_state import NodeStatus, RunState
from graphrunner.runtime.activities import ActivityError

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """An invariant of the scheduler was violated; the run is rejected."""


def is_skipped(node_id: str, status: dict[str, NodeStatus], edges: list[Edge]) -> bool:
    """
    Whether a ready node should be skipped instead of run.

    A node is skipped when it was already marked skipped, or when it has
    incoming edges and every one of them comes from a skipped node.
    """
    if status.get(node_id) == NodeStatus.SKIPPED:
        return True
    sources = [e.source for e in edges if e.target == node_id]
    return bool(sources) and all(status.get(s) == NodeStatus.SKIPPED for s in sources)


def failure_message(exc: BaseException) -> str:
    """The message recorded as a failed node's output."""
    cause = exc.__cause__ if isinstance(exc, ActivityError) and exc.__cause__ else exc
    return str(cause) or type(cause).__name__


class WaveScheduler:
    """Drives ``state.ready`` to exhaustion for one run."""

    def __init__(self, graph: Graph, state: RunState, executor: NodeExecutor):
        self.graph = graph
        self.state = state
        self.executor = executor
        self._dispatched: set[str] = set()
        self._in_flight: dict[asyncio.Task, str] = {}

    async def run(self) -> RunState:
        """
        Run the graph.

        Returns:
            The run state, complete or stopped at the first node failure

        Raises:
            SchedulingError: If a node finished without output
        """
        try:
            self._dispatch_ready()
            while self._in_flight:
                done, _ = await asyncio.wait(
                    self._in_flight.keys(), return_when=asyncio.FIRST_COMPLETED
                )
                failed = False
                for task in sorted(done, key=lambda t: self._in_flight[t]):
                    node_id = self._in_flight.pop(task)
                    if not self._complete(node_id, task):
                        failed = True
                if failed:
                    return self.state
                self._dispatch_ready()
        finally:
            await self._cancel_in_flight()

        if self.state.is_complete():
            logger.info(f"Run {self.state.run_id} completed")
        return self.state

    def _dispatch_ready(self) -> None:
        while self.state.ready:
            node_id = self.state.ready.pop(0)
            if node_id in self._dispatched:
                raise SchedulingError(f"Node '{node_id}' was dispatched twice")
            self._dispatched.add(node_id)

            node = self.graph.get_node(node_id)
            if node is None:
                raise SchedulingError(f"Node '{node_id}' is not part of the graph")

            if is_skipped(node_id, self.state.status, self.graph.edges):
                self.state.status[node_id] = NodeStatus.SKIPPED
                logger.info(f"Skipping node '{node_id}'")
                self._release(node_id)
                continue

            inputs: dict[str, Any] = {
                edge.source: self.state.outputs.get(edge.source)
                for edge in self.graph.incoming(node_id)
            }
            self.state.status[node_id] = NodeStatus.RUNNING
            logger.info(f"Dispatching node '{node_id}'")
            task = asyncio.create_task(
                self.executor.run(node, inputs, self.graph.outgoing(node_id)),
                name=f"node:{node_id}",
            )
            self._in_flight[task] = node_id

    def _complete(self, node_id: str, task: asyncio.Task) -> bool:
        """Record a finished node. Returns False if the run must stop."""
        exc = task.exception()
        if exc is not None:
            message = failure_message(exc)
            self.state.status[node_id] = NodeStatus.ERROR
            self.state.outputs[node_id] = {"error": message}
            logger.error(f"Node '{node_id}' failed: {message}", exc_info=exc)
            return False

        output = task.result()
        if not output:
            raise SchedulingError(f"No output from node '{node_id}'")

        self.state.status[node_id] = NodeStatus.DONE
        self.state.outputs[node_id] = output
        self._release(node_id)
        return True

    def _release(self, node_id: str) -> None:
        """Resolve a finished node's outgoing edges."""
        for edge in self.graph.outgoing(node_id):
            self.state.pending_in[edge.target] -= 1
            if self.state.pending_in[edge.target] == 0:
                self.state.ready.append(edge.target)
        self.state.ready.sort()

    async def _cancel_in_flight(self) -> None:
        if not self._in_flight:
            return
        logger.info(f"Cancelling {len(self._in_flight)} in-flight node(s)")
        tasks = list(self._in_flight)
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

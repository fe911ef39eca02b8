"""
Graph workflow - one graph run end to end.

Ties together run-state initialization, the wave scheduler and the
needed-input broker, and exposes the run's signal and queries:

- signal ``receive_input(provided)``: answer pending input requests
- queries ``get_needed_input``, ``get_node_statuses``, ``get_node_output``,
  ``get_transcripts(offset)``, ``get_files``

Queries never block and return copies, so callers cannot mutate the run.
"""

import copy
import logging
from typing import Any

from graphrunner.graph.input_broker import NeededInput, NeededInputBroker, ProvidedInput
from graphrunner.graph.messages import Message
from graphrunner.graph.model import Graph
from graphrunner.graph.node_executor import NodeExecutor
from graphrunner.graph.run_state import (
    FileRef,
    InvalidInputError,
    NodeStatus,
    RunState,
    init_run_state,
)
from graphrunner.graph.scheduler import WaveScheduler
from graphrunner.observability import set_trace_context
from graphrunner.runtime.activities import ActivityProxy

logger = logging.getLogger(__name__)


class GraphWorkflow:
    """
    A single graph run.

    Example:
        workflow = GraphWorkflow(run_id="run-1", activities=ActivityProxy(my_activities))
        state = await workflow.run(graph, prompt="Summarize https://example.com")
    """

    def __init__(
        self,
        run_id: str,
        activities: ActivityProxy,
        model_kind: str | None = None,
        image_model_kind: str | None = None,
    ):
        self.run_id = run_id
        self.activities = activities
        self.model_kind = model_kind
        self.image_model_kind = image_model_kind
        self.broker = NeededInputBroker()
        self.state = RunState(run_id=run_id)

    async def run(
        self,
        graph: Graph,
        prompt: Any = None,
        from_node: str | None = None,
        initial: RunState | None = None,
    ) -> RunState:
        """
        Execute the graph.

        An unusable resume point does not raise: the returned state carries
        the reason in ``error`` and no node runs.

        Args:
            graph: The graph to run
            prompt: Optional user prompt visible to every node
            from_node: Resume from this node of ``initial``
            initial: The state of the run being resumed

        Returns:
            The final RunState
        """
        set_trace_context(run_id=self.run_id)
        try:
            errors = graph.validate()
            if errors:
                raise InvalidInputError(f"Invalid graph: {'; '.join(errors)}")
            self.state = init_run_state(self.run_id, graph, prompt, from_node, initial)
        except InvalidInputError as e:
            logger.error(f"Run {self.run_id} cannot start: {e}")
            self.state = RunState(run_id=self.run_id, error=str(e))
            return self.state

        logger.info(
            f"Run {self.run_id} starting with {len(graph.nodes)} node(s), ready: {self.state.ready}"
        )
        executor = NodeExecutor(
            state=self.state,
            activities=self.activities,
            broker=self.broker,
            model_kind=self.model_kind,
            image_model_kind=self.image_model_kind,
        )
        return await WaveScheduler(graph, self.state, executor).run()

    # Signal

    def receive_input(self, provided: list[ProvidedInput]) -> None:
        self.broker.receive(provided)

    # Queries

    def get_needed_input(self) -> list[NeededInput]:
        return self.broker.pending()

    def get_node_statuses(self) -> dict[str, NodeStatus]:
        return dict(self.state.status)

    def get_node_output(self, node_id: str) -> Any:
        return copy.deepcopy(self.state.outputs.get(node_id))

    def get_transcripts(self, offset: int = 0) -> list[tuple[str, list[Message]]]:
        return [(nid, list(messages)) for nid, messages in self.state.transcripts[offset or 0 :]]

    def get_files(self) -> dict[str, FileRef]:
        return dict(self.state.files)

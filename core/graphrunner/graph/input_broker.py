"""
Needed-input broker.

Turns a node's request for human input into a pending record plus a future
the node awaits. An external ``receive_input`` signal resolves the matching
futures by ``(name, node_id)``; unmatched requests stay pending.

The records are plain data so the pending list can be served to pollers
as-is; the futures never leave the broker.
"""

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class NeededInput(BaseModel):
    """A question a suspended node is waiting on."""

    name: str
    prompt: str = ""
    default: Any = None
    node_id: str

    model_config = ConfigDict(frozen=True)


class InputKey(BaseModel):
    name: str
    node_id: str | None = None


class ProvidedInput(BaseModel):
    """An answer to a NeededInput, matched on ``(for.name, node_id)``."""

    for_: InputKey = Field(alias="for")
    value: Any = None
    node_id: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def target_node_id(self) -> str | None:
        return self.node_id if self.node_id is not None else self.for_.node_id

    @classmethod
    def answer(cls, needed: NeededInput, value: Any) -> "ProvidedInput":
        return cls(
            for_=InputKey(name=needed.name, node_id=needed.node_id),
            value=value,
            node_id=needed.node_id,
        )


class NeededInputBroker:
    """
    Holds pending input requests of one run.

    Must be used from the event loop thread that runs the workflow; the
    signal handler and the node coroutines share the same list.
    """

    def __init__(self) -> None:
        self._pending: list[tuple[NeededInput, asyncio.Future]] = []

    def register(self, request: NeededInput) -> asyncio.Future:
        """Add a pending request and return the future its answer resolves."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.append((request, future))
        logger.info(f"Node '{request.node_id}' is waiting for input '{request.name}'")
        return future

    def receive(self, provided: list[ProvidedInput]) -> list[NeededInput]:
        """
        Resolve every pending request matched by a provided input.

        Returns:
            The requests that were resolved
        """
        resolved: list[tuple[NeededInput, asyncio.Future, ProvidedInput]] = []
        remaining = []
        for request, future in self._pending:
            match = next(
                (
                    p
                    for p in provided
                    if p.for_.name == request.name and p.target_node_id == request.node_id
                ),
                None,
            )
            if match is None:
                remaining.append((request, future))
            else:
                resolved.append((request, future, match))
        self._pending = remaining

        for request, future, match in resolved:
            if not future.done():
                future.set_result(match.value)

        unmatched = sum(1 for p in provided if all(p is not m for _, _, m in resolved))
        if unmatched:
            logger.debug(f"{unmatched} provided input(s) matched no pending request")
        return [request for request, _, _ in resolved]

    def pending(self) -> list[NeededInput]:
        return [request for request, _ in self._pending]

    def has_pending(self, node_id: str) -> bool:
        return any(request.node_id == node_id for request, _ in self._pending)

    def discard(self, node_id: str) -> None:
        """Drop a node's pending requests (the node stopped waiting)."""
        kept = []
        for request, future in self._pending:
            if request.node_id == node_id:
                future.cancel()
            else:
                kept.append((request, future))
        self._pending = kept

"""Tests for the needed-input broker."""

import asyncio

import pytest

from graphrunner.graph.input_broker import InputKey, NeededInput, NeededInputBroker, ProvidedInput


def _needed(name: str, node_id: str = "ask") -> NeededInput:
    return NeededInput(name=name, prompt=f"Enter {name}", node_id=node_id)


class TestNeededInputBroker:
    async def test_matching_answer_resolves_future(self):
        broker = NeededInputBroker()
        future = broker.register(_needed("topic"))

        resolved = broker.receive([ProvidedInput(for_=InputKey(name="topic", node_id="ask"), value="rivers")])

        assert resolved == [_needed("topic")]
        assert await future == "rivers"
        assert broker.pending() == []

    async def test_unmatched_requests_stay_pending(self):
        broker = NeededInputBroker()
        topic = broker.register(_needed("topic"))
        broker.register(_needed("tone"))

        broker.receive([ProvidedInput.answer(_needed("topic"), "rivers")])

        assert topic.done()
        assert broker.pending() == [_needed("tone")]
        assert broker.has_pending("ask")

    async def test_match_requires_node_id(self):
        broker = NeededInputBroker()
        future = broker.register(_needed("topic", node_id="a"))

        assert broker.receive([ProvidedInput.answer(_needed("topic", node_id="b"), "x")]) == []
        assert not future.done()

    async def test_top_level_node_id_wins(self):
        provided = ProvidedInput.model_validate(
            {"for": {"name": "topic", "node_id": "a"}, "value": 1, "node_id": "b"}
        )
        assert provided.target_node_id == "b"

        broker = NeededInputBroker()
        future = broker.register(_needed("topic", node_id="b"))
        broker.receive([provided])
        assert await future == 1

    async def test_one_answer_resolves_duplicates(self):
        broker = NeededInputBroker()
        first = broker.register(_needed("topic"))
        second = broker.register(_needed("topic"))

        broker.receive([ProvidedInput.answer(_needed("topic"), "x")])

        assert await first == "x"
        assert await second == "x"

    async def test_discard_cancels_node_requests(self):
        broker = NeededInputBroker()
        mine = broker.register(_needed("topic", node_id="a"))
        other = broker.register(_needed("topic", node_id="b"))

        broker.discard("a")

        assert mine.cancelled()
        assert not other.done()
        assert not broker.has_pending("a")
        with pytest.raises(asyncio.CancelledError):
            await mine

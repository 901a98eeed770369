import asyncio

import pytest

from medgraph.core.exceptions import PersistenceFailure
from medgraph.models.graph import Fragment, KnowledgeGraph
from medgraph.services.accumulator import AccumulatorRegistry, GraphAccumulator


def fragment(*labels, node_type="condition"):
    return Fragment(
        nodes=[{"id": f"n-{label.lower()}", "label": label, "type": node_type} for label in labels]
    )


@pytest.mark.asyncio
async def test_apply_merges_and_lays_out():
    accumulator = GraphAccumulator("JAN451234")
    accumulator.register("f1")

    merged, persisted = await accumulator.apply("f1", fragment("Asthma", "Eczema"))

    assert (merged, persisted) == (True, False)
    graph = accumulator.snapshot()
    assert [n.label for n in graph.nodes] == ["Asthma", "Eczema"]
    assert [n.x for n in graph.nodes] == [375.0, 425.0]


@pytest.mark.asyncio
async def test_cancelled_file_is_never_merged():
    accumulator = GraphAccumulator("JAN451234")
    accumulator.register("f1")

    assert accumulator.cancel("f1") is True
    merged, _ = await accumulator.apply("f1", fragment("Asthma"))

    assert merged is False
    assert accumulator.snapshot().is_empty()


def test_cancel_unknown_file_returns_false():
    accumulator = GraphAccumulator("JAN451234")
    assert accumulator.cancel("missing") is False

    accumulator.register("f1")
    accumulator.finish("f1")
    assert accumulator.cancel("f1") is False


@pytest.mark.asyncio
async def test_persistence_failure_keeps_merge():
    accumulator = GraphAccumulator("JAN451234")

    async def failing_persist(graph: KnowledgeGraph):
        raise PersistenceFailure("database offline")

    merged, persisted = await accumulator.apply("f1", fragment("Asthma"), failing_persist)

    assert (merged, persisted) == (True, False)
    assert [n.label for n in accumulator.snapshot().nodes] == ["Asthma"]


@pytest.mark.asyncio
async def test_persist_receives_each_merged_graph_in_order():
    accumulator = GraphAccumulator("JAN451234")
    seen: list[list[str]] = []

    async def slow_persist(graph: KnowledgeGraph):
        await asyncio.sleep(0.01)
        seen.append([n.label for n in graph.nodes])

    await asyncio.gather(
        accumulator.apply("f1", fragment("Asthma"), slow_persist),
        accumulator.apply("f2", fragment("asthma", "Eczema"), slow_persist),
    )

    assert seen == [["Asthma"], ["Asthma", "Eczema"]]


@pytest.mark.asyncio
async def test_initial_graph_is_laid_out():
    stored = KnowledgeGraph(nodes=[{"id": "p1", "label": "Jane", "type": "patient"}])

    accumulator = GraphAccumulator("JAN451234", stored)

    node = accumulator.snapshot().nodes[0]
    assert (node.x, node.y) == pytest.approx((400.0, 120.0))


@pytest.mark.asyncio
async def test_registry_loads_each_patient_once():
    calls: list[str] = []

    async def loader(pid: str):
        calls.append(pid)
        return None

    registry = AccumulatorRegistry()
    first = await registry.get("JAN451234", loader)
    second = await registry.get("JAN451234", loader)

    assert first is second
    assert calls == ["JAN451234"]
    assert registry.peek("JAN451234") is first

    registry.drop("JAN451234")
    assert registry.peek("JAN451234") is None


@pytest.mark.asyncio
async def test_slow_load_for_one_patient_does_not_block_another():
    slow = asyncio.Event()

    async def loader(pid: str):
        if pid == "SLO451234":
            await slow.wait()
        return None

    registry = AccumulatorRegistry()
    pending = asyncio.create_task(registry.get("SLO451234", loader))
    await asyncio.sleep(0)

    other = await asyncio.wait_for(registry.get("FAS301234", loader), timeout=1)
    assert other.pid == "FAS301234"
    assert not pending.done()

    slow.set()
    assert (await pending).pid == "SLO451234"


@pytest.mark.asyncio
async def test_overlapping_loads_for_one_patient_share_an_accumulator():
    gate = asyncio.Event()

    async def loader(pid: str):
        await gate.wait()
        return None

    registry = AccumulatorRegistry()
    first = asyncio.create_task(registry.get("JAN451234", loader))
    second = asyncio.create_task(registry.get("JAN451234", loader))
    await asyncio.sleep(0)
    gate.set()

    assert await first is await second

# medgraph/services/accumulator.py
import asyncio
import logging
from typing import Awaitable, Callable

from medgraph.core.exceptions import PersistenceFailure
from medgraph.models.graph import Fragment, KnowledgeGraph
from medgraph.services.graph_merge import merge_graphs
from medgraph.services.layout import layout_graph

logger = logging.getLogger(__name__)

PersistGraph = Callable[[KnowledgeGraph], Awaitable[None]]
LoadGraph = Callable[[str], Awaitable[KnowledgeGraph | None]]


class GraphAccumulator:
    """
    The running graph for one patient.

    Merges go through a lock so each one sees the result of the previous one,
    and the merged graph is laid out and persisted before the lock is released.
    Files removed while their extraction is in flight are marked cancelled and
    their fragments are never merged.
    """

    def __init__(self, pid: str, graph: KnowledgeGraph | None = None):
        self.pid = pid
        self.graph = layout_graph(graph) if graph else KnowledgeGraph()
        self.quota_exhausted = False
        self._lock = asyncio.Lock()
        self._pending: set[str] = set()
        self._cancelled: set[str] = set()

    def register(self, file_id: str) -> None:
        self._pending.add(file_id)

    def cancel(self, file_id: str) -> bool:
        """Marks a pending file as cancelled. Returns False if it was not pending."""
        if file_id not in self._pending:
            return False
        self._pending.discard(file_id)
        self._cancelled.add(file_id)
        logger.info("Cancelled pending file %s for patient %s", file_id, self.pid)
        return True

    def is_pending(self, file_id: str) -> bool:
        return file_id in self._pending

    def is_cancelled(self, file_id: str) -> bool:
        return file_id in self._cancelled

    def finish(self, file_id: str) -> None:
        self._pending.discard(file_id)
        self._cancelled.discard(file_id)

    async def apply(self, file_id: str, fragment: Fragment, persist: PersistGraph | None = None) -> tuple[bool, bool]:
        """
        Merge one file's fragment. Returns ``(merged, persisted)``.

        A persistence failure is logged and leaves the in-memory graph merged.
        """
        async with self._lock:
            if file_id in self._cancelled:
                logger.info("Dropping result of cancelled file %s", file_id)
                return False, False

            self.graph = layout_graph(merge_graphs(self.graph, fragment))
            logger.info(
                "Merged file %s into %s: %d nodes, %d edges",
                file_id, self.pid, len(self.graph.nodes), len(self.graph.edges),
            )
            if persist is None:
                return True, False
            try:
                await persist(self.graph)
            except PersistenceFailure as exc:
                logger.error("Failed to persist graph for %s: %s", self.pid, exc.message)
                return True, False
            return True, True

    def snapshot(self) -> KnowledgeGraph:
        return KnowledgeGraph(nodes=list(self.graph.nodes), edges=list(self.graph.edges))


class AccumulatorRegistry:
    """Owns one accumulator per patient for the lifetime of the process."""

    def __init__(self):
        self._accumulators: dict[str, GraphAccumulator] = {}

    async def get(self, pid: str, loader: LoadGraph | None = None) -> GraphAccumulator:
        """
        The patient's accumulator, loading its stored graph on first use.

        Loads for different patients run concurrently. When two loads for the
        same patient overlap, the first one to finish is kept.
        """
        accumulator = self._accumulators.get(pid)
        if accumulator is not None:
            return accumulator
        graph = await loader(pid) if loader else None
        return self._accumulators.setdefault(pid, GraphAccumulator(pid, graph))

    def peek(self, pid: str) -> GraphAccumulator | None:
        return self._accumulators.get(pid)

    def drop(self, pid: str) -> None:
        self._accumulators.pop(pid, None)

"""Read-only view of a workflow graph and node readiness.

Results come straight from the persisted store and may be stale by the
time the caller acts on them; callers tolerate that.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sheetflow.constants import default_category, is_file_input
from sheetflow.core.database import Database
from sheetflow.core.exceptions import CycleDetectedError
from sheetflow.core.logging import get_logger
from sheetflow.models.execution import FileProcessingStatus
from sheetflow.models.schema import normalize_workflow_id

logger = get_logger(__name__)


@dataclass(frozen=True)
class Edge:
    source: str
    target: str


@dataclass
class GraphNode:
    id: str
    type: str
    category: str
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_file_input(self) -> bool:
        return is_file_input(self.type)


def compute_execution_layers(node_ids: Iterable[str], edges: Iterable[Edge]) -> List[List[str]]:
    """Group nodes into dependency layers with Kahn's algorithm.

    Nodes in one layer do not depend on each other. Layers are sorted by
    node id so the resulting order is deterministic.

    Raises:
        CycleDetectedError: If some nodes can never reach in-degree zero.
    """
    ids = set(node_ids)
    in_degree: Dict[str, int] = {node_id: 0 for node_id in ids}
    adjacency: Dict[str, List[str]] = defaultdict(list)

    for edge in edges:
        if edge.source in ids and edge.target in ids:
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

    layers: List[List[str]] = []
    remaining = set(ids)

    while remaining:
        layer = sorted(node_id for node_id in remaining if in_degree[node_id] == 0)
        if not layer:
            logger.warning("Cycle detected in workflow graph", remaining=sorted(remaining))
            raise CycleDetectedError(sorted(remaining))

        layers.append(layer)
        for node_id in layer:
            remaining.discard(node_id)
            for target in adjacency[node_id]:
                in_degree[target] -= 1

    return layers


class WorkflowGraphAccessor:
    """Nodes, edges and readiness of a workflow, read from the persisted store."""

    def __init__(self, database: Database):
        self.database = database

    async def get_nodes(self, workflow_id: str) -> List[GraphNode]:
        rows = await self.database.list_workflow_nodes(normalize_workflow_id(workflow_id))
        return [
            GraphNode(
                id=row.node_id,
                type=row.node_type,
                category=row.category or default_category(row.node_type),
                config=row.config or {},
            )
            for row in rows
        ]

    async def get_node(self, workflow_id: str, node_id: str) -> Optional[GraphNode]:
        row = await self.database.get_workflow_node(normalize_workflow_id(workflow_id), node_id)
        if row is None:
            return None
        return GraphNode(id=row.node_id, type=row.node_type,
                         category=row.category or default_category(row.node_type),
                         config=row.config or {})

    async def get_edges(self, workflow_id: str) -> List[Edge]:
        rows = await self.database.list_workflow_edges(normalize_workflow_id(workflow_id))
        return [Edge(source=row.source_node_id, target=row.target_node_id) for row in rows]

    async def get_upstream(self, workflow_id: str, node_id: str) -> List[str]:
        return sorted({e.source for e in await self.get_edges(workflow_id) if e.target == node_id})

    async def get_downstream(self, workflow_id: str, node_id: str) -> List[str]:
        return sorted({e.target for e in await self.get_edges(workflow_id) if e.source == node_id})

    async def is_node_ready_for_propagation(self, workflow_id: str, node_id: str) -> bool:
        """True when the node's processing is complete and a sheet is chosen.

        A node with a file attached is ready once the file finished
        processing and, if the file has several sheets, one is selected. A
        node without a file is ready once it has a persisted schema record
        with columns.
        """
        normalized = normalize_workflow_id(workflow_id)
        node_file = await self.database.get_workflow_file(normalized, node_id)

        if node_file is not None and node_file.file_id:
            if node_file.processing_status != FileProcessingStatus.COMPLETED.value:
                logger.debug("Node file not processed yet", workflow_id=normalized, node_id=node_id,
                             processing_status=node_file.processing_status)
                return False
            metadata = node_file.file_metadata or {}
            sheets = metadata.get("sheets") or []
            if len(sheets) > 1 and not metadata.get("selected_sheet"):
                logger.debug("Node has several sheets and none selected", workflow_id=normalized,
                             node_id=node_id, sheets=len(sheets))
                return False
            return True

        record = await self.database.get_file_schema(normalized, node_id)
        return record is not None and bool(record.columns)

    async def get_selected_sheet(self, workflow_id: str, node_id: str) -> Optional[str]:
        node_file = await self.database.get_workflow_file(normalize_workflow_id(workflow_id), node_id)
        if node_file is None:
            return None
        return (node_file.file_metadata or {}).get("selected_sheet")

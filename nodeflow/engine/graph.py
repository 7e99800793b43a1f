"""
Graph Model for the Execution Engine.

The Graph is an immutable-per-run snapshot of nodes and directed edges,
with validation, a neighbor index and dependency ordering.
"""

from typing import Any, Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field
from collections import deque
import uuid

from nodeflow.engine.errors import GraphValidationError, NeighborResolutionError
from nodeflow.engine.node import Node, NodeType


@dataclass(frozen=True)
class Edge:
    """A directed connection ``source -> target``."""
    source: str
    target: str
    id: Optional[str] = None
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(
            source=data["source"],
            target=data["target"],
            id=data.get("id"),
            source_handle=data.get("sourceHandle", data.get("source_handle")),
            target_handle=data.get("targetHandle", data.get("target_handle")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id or f"{self.source}-{self.target}",
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        }


@dataclass(frozen=True)
class Neighbors:
    """Incoming and outgoing neighbors of a node, in edge declaration order."""
    incoming: List[Node]
    outgoing: List[Node]


@dataclass
class Graph:
    """
    A workflow graph consisting of nodes and edges.

    Nodes and edges keep their declaration order, which is used to break
    ties wherever the engine needs a stable order. Duplicate node ids are
    kept as declared so that validate() can report them.

    Attributes:
        graph_id: Unique identifier for this graph
        name: Human-readable name
        nodes: Nodes in declaration order
        edges: Edges in declaration order
    """

    graph_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Unnamed Workflow"
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Graph":
        """
        Build a graph from a ``{nodes: [...], edges: [...]}`` document.

        Node documents must already be resolved against their presets.
        """
        return cls(
            graph_id=document.get("id") or document.get("graph_id") or str(uuid.uuid4()),
            name=document.get("name", "Unnamed Workflow"),
            description=document.get("description", ""),
            nodes=[Node.model_validate(n) for n in document.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in document.get("edges", [])],
            metadata=dict(document.get("metadata", {})),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def get(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node(self, node_id: str) -> Node:
        """Get a node by id, raising NeighborResolutionError if missing."""
        found = self.get(node_id)
        if found is None:
            raise NeighborResolutionError(f"Node '{node_id}' not found in graph")
        return found

    def position(self, node_id: str) -> int:
        """Declaration index of a node."""
        return self.node_ids.index(node_id)

    def predecessors(self, node_id: str) -> List[str]:
        """Ids of predecessor nodes in edge declaration order (deduplicated)."""
        return _unique(e.source for e in self.edges if e.target == node_id)

    def successors(self, node_id: str) -> List[str]:
        """Ids of successor nodes in edge declaration order (deduplicated)."""
        return _unique(e.target for e in self.edges if e.source == node_id)

    def neighbors(self, node_id: str) -> Neighbors:
        """Resolve the incoming and outgoing neighbor nodes of a node."""
        self.node(node_id)
        return Neighbors(
            incoming=[self.node(i) for i in self.predecessors(node_id)],
            outgoing=[self.node(i) for i in self.successors(node_id)],
        )

    def entry_nodes(self) -> List[str]:
        """Nodes without predecessors, in declaration order."""
        targets = {e.target for e in self.edges}
        return [n.id for n in self.nodes if n.id not in targets]

    def is_aggregator(self, node_id: str) -> bool:
        """A node with more than one predecessor (or declared as aggregator)."""
        node = self.get(node_id)
        if node is not None and node.type == NodeType.AGGREGATOR:
            return True
        return len(self.predecessors(node_id)) > 1

    def descendants(self, node_id: str) -> Set[str]:
        """All nodes reachable from the given node (excluding itself)."""
        seen: Set[str] = set()
        to_visit = list(self.successors(node_id))
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(self.successors(current))
        seen.discard(node_id)
        return seen

    # ------------------------------------------------------------------
    # Validation and ordering
    # ------------------------------------------------------------------

    def validate(self) -> List[str]:
        """
        Validate the graph structure.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.nodes:
            errors.append("Graph must have at least one node")
            return errors

        seen: Set[str] = set()
        duplicates = []
        for node_id in self.node_ids:
            if node_id in seen and node_id not in duplicates:
                duplicates.append(node_id)
            seen.add(node_id)
        if duplicates:
            errors.append(f"Duplicate node ids: {duplicates}")

        dangling = False
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in seen:
                    dangling = True
                    errors.append(
                        f"Edge {edge.source} -> {edge.target} references unknown node '{endpoint}'"
                    )
        if dangling:
            # Ordering checks need resolvable edges.
            return errors

        cyclic = self._cyclic_nodes()
        if cyclic:
            errors.append(f"Graph contains a cycle through: {cyclic}")

        reachable = self._reachable_from_entries()
        for node in self.nodes:
            if not self.is_aggregator(node.id):
                continue
            unreachable = [p for p in self.predecessors(node.id) if p not in reachable]
            if unreachable:
                errors.append(
                    f"Aggregator '{node.id}' has unreachable predecessors: {unreachable}"
                )

        return errors

    def ensure_valid(self) -> None:
        """Raise GraphValidationError if the graph is not runnable."""
        errors = self.validate()
        if errors:
            raise GraphValidationError(errors)

    def topological_order(self) -> List[str]:
        """
        Dependency-respecting order of node ids.

        Among nodes that are ready at the same time, declaration order wins.
        """
        self.ensure_valid()
        remaining = {n: len(self.predecessors(n)) for n in self.node_ids}
        ready = [n for n in self.node_ids if remaining[n] == 0]
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for succ in self.successors(current):
                remaining[succ] -= 1
                if remaining[succ] == 0:
                    ready.append(succ)
            ready.sort(key=self.position)
        return order

    def _cyclic_nodes(self) -> List[str]:
        """Nodes left over by Kahn's algorithm, i.e. on or behind a cycle."""
        remaining = {n: len(self.predecessors(n)) for n in self.node_ids}
        queue = deque(n for n, count in remaining.items() if count == 0)
        visited = set()
        while queue:
            current = queue.popleft()
            visited.add(current)
            for succ in self.successors(current):
                remaining[succ] -= 1
                if remaining[succ] == 0:
                    queue.append(succ)
        return [n for n in self.node_ids if n not in visited]

    def _reachable_from_entries(self) -> Set[str]:
        reachable: Set[str] = set()
        for entry in self.entry_nodes():
            reachable.add(entry)
            reachable |= self.descendants(entry)
        return reachable

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the graph to a document."""
        return {
            "id": self.graph_id,
            "name": self.name,
            "description": self.description,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "metadata": self.metadata,
        }

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph LR"]
        for node in self.nodes:
            if node.type == NodeType.STARTING:
                lines.append(f'    {node.id}(("{node.name}"))')
            elif self.is_aggregator(node.id):
                lines.append(f'    {node.id}{{{{"{node.name}"}}}}')
            else:
                lines.append(f'    {node.id}["{node.name}"]')
        for edge in self.edges:
            lines.append(f"    {edge.source} --> {edge.target}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Graph(name='{self.name}', nodes={self.node_ids})"


def _unique(ids: Iterable[str]) -> List[str]:
    result: List[str] = []
    for item in ids:
        if item not in result:
            result.append(item)
    return result

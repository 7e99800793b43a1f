"""
Execution context construction.

Each node execution gets a fresh, read-only context built from the graph:
a view of the node itself, its left (incoming) and right (outgoing)
neighbors, the merged input payload and the capabilities it may call.
"""

from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from dataclasses import dataclass, field, replace
from copy import deepcopy

from nodeflow.engine.errors import NeighborResolutionError
from nodeflow.engine.graph import Graph
from nodeflow.engine.node import Node


EmitFn = Callable[[str, Any], None]
ReportFn = Callable[..., None]
LogFn = Callable[..., None]


def _noop(*args: Any, **kwargs: Any) -> None:
    return None


@dataclass(frozen=True)
class NodeView:
    """Read view of the executing node."""
    id: str
    type: str
    sub_type: Optional[str]
    label: str
    data: Dict[str, Any]

    @property
    def subType(self) -> Optional[str]:
        return self.sub_type


@dataclass(frozen=True)
class NeighborView:
    """Read view of a neighbor node."""
    id: str
    type: str
    label: str

    @classmethod
    def of(cls, node: Node) -> "NeighborView":
        return cls(id=node.id, type=node.type.value, label=node.name)


@dataclass(frozen=True)
class ExecutionContext:
    """
    Everything a node script can see and do.

    Attributes:
        node: View of the node itself
        left_node: First incoming neighbor, or None for entry nodes
        right_node: First outgoing neighbor, or None for sink nodes
        incoming: All incoming neighbors in edge declaration order
        input: Merged input payload
        emit: ``emit(type, content)`` routed to the run's event bus
        report: ``report(progress=None, task=None)`` progress hook
        log: ``log(*parts)`` appends a line to the node's logs
    """

    node: NodeView
    left_node: Optional[NeighborView]
    right_node: Optional[NeighborView]
    input: Any
    incoming: Tuple[NeighborView, ...] = ()
    emit: EmitFn = field(default=_noop, repr=False)
    report: ReportFn = field(default=_noop, repr=False)
    log: LogFn = field(default=_noop, repr=False)

    @property
    def leftNode(self) -> Optional[NeighborView]:
        return self.left_node

    @property
    def rightNode(self) -> Optional[NeighborView]:
        return self.right_node

    def with_log(self, log: LogFn) -> "ExecutionContext":
        """Copy of this context with a different log capability."""
        return replace(self, log=log)

    def with_input(self, payload: Any) -> "ExecutionContext":
        """Copy of this context with its own deep copy of ``payload`` as input."""
        return replace(self, input=deepcopy(payload))


class ContextBuilder:
    """
    Builds ExecutionContexts from a graph and the outputs produced so far.

    Pure computation over already-available state; never blocks.
    """

    def build(
        self,
        node: Node,
        graph: Graph,
        prior_outputs: Mapping[str, Any],
        emit: EmitFn = _noop,
        report: ReportFn = _noop,
        log: LogFn = _noop,
    ) -> ExecutionContext:
        """
        Build the context for one node execution.

        Args:
            node: The node about to run
            graph: The graph it belongs to
            prior_outputs: Outputs of nodes that already finished, by id
            emit: Event capability bound to the node
            report: Progress capability bound to the node
            log: Log capability bound to the node

        Raises:
            NeighborResolutionError: If a predecessor has no recorded output
        """
        neighbors = graph.neighbors(node.id)
        incoming = tuple(NeighborView.of(n) for n in neighbors.incoming)

        return ExecutionContext(
            node=NodeView(
                id=node.id,
                type=node.type.value,
                sub_type=node.sub_type,
                label=node.name,
                data=deepcopy(node.data()),
            ),
            left_node=incoming[0] if incoming else None,
            right_node=NeighborView.of(neighbors.outgoing[0]) if neighbors.outgoing else None,
            input=self.merge_inputs(node, [n.id for n in neighbors.incoming], prior_outputs),
            incoming=incoming,
            emit=emit,
            report=report,
            log=log,
        )

    def merge_inputs(
        self,
        node: Node,
        predecessor_ids: list,
        prior_outputs: Mapping[str, Any],
    ) -> Any:
        """
        Merge predecessor outputs into the node's input payload.

        - no predecessor: the node's own seed (``config.input``, else {})
        - one predecessor: its output verbatim
        - several: ``{predecessor_id: output}`` in edge declaration order
        """
        if not predecessor_ids:
            seed = node.config.input
            return deepcopy(seed) if seed is not None else {}

        missing = [p for p in predecessor_ids if p not in prior_outputs]
        if missing:
            raise NeighborResolutionError(
                f"Node '{node.id}' has predecessors without output: {missing}"
            )

        if len(predecessor_ids) == 1:
            return deepcopy(prior_outputs[predecessor_ids[0]])

        return {p: deepcopy(prior_outputs[p]) for p in predecessor_ids}

"""Immutable in-memory view of one workflow version."""

from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

from ..models.core import Edge, Node, NodeType, WorkflowDefinition, WorkflowSettings


class GraphModel:
    """
    Node arena plus adjacency lists for a single workflow snapshot.

    Nodes never reference each other directly; all traversal goes through the
    edge lists built here. Edges pointing at unknown nodes are kept out of the
    adjacency lists and exposed through ``dangling_edges`` for the validator.
    """

    def __init__(self, workflow: WorkflowDefinition):
        self._workflow = workflow
        self._nodes: Dict[str, Node] = {node.id: node for node in workflow.nodes}
        outgoing: Dict[str, List[Edge]] = {node_id: [] for node_id in self._nodes}
        incoming: Dict[str, List[Edge]] = {node_id: [] for node_id in self._nodes}
        dangling: List[Edge] = []

        for edge in workflow.edges:
            if edge.source not in self._nodes or edge.target not in self._nodes:
                dangling.append(edge)
                continue
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)

        self._outgoing = MappingProxyType({k: tuple(v) for k, v in outgoing.items()})
        self._incoming = MappingProxyType({k: tuple(v) for k, v in incoming.items()})
        self._dangling = tuple(dangling)

    @property
    def workflow(self) -> WorkflowDefinition:
        return self._workflow

    @property
    def workflow_id(self) -> str:
        return self._workflow.id

    @property
    def version(self) -> int:
        return self._workflow.version

    @property
    def settings(self) -> WorkflowSettings:
        return self._workflow.settings

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return tuple(self._workflow.nodes)

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return tuple(self._workflow.edges)

    @property
    def dangling_edges(self) -> Tuple[Edge, ...]:
        return self._dangling

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def nodes_of_type(self, node_type: NodeType) -> List[Node]:
        return [node for node in self._workflow.nodes if node.type == node_type.value]

    def trigger(self) -> Optional[Node]:
        """Return the entry node when exactly one trigger exists."""
        triggers = self.nodes_of_type(NodeType.TRIGGER)
        return triggers[0] if len(triggers) == 1 else None

    def outgoing(self, node_id: str) -> Tuple[Edge, ...]:
        return self._outgoing.get(node_id, ())

    def incoming(self, node_id: str) -> Tuple[Edge, ...]:
        return self._incoming.get(node_id, ())

    def handles(self, node_id: str) -> List[Optional[str]]:
        return [edge.source_handle for edge in self.outgoing(node_id)]

    def has_handle(self, node_id: str, handle: str) -> bool:
        return handle in self.handles(node_id)

    def successor(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """
        Resolve the next node id leaving ``node_id``.

        A named handle must match exactly. Without a handle the first unnamed
        edge is followed, or the only edge when the node has exactly one.
        Returns None when nothing applies, which completes the execution.
        """
        edges = self.outgoing(node_id)
        if handle is not None:
            for edge in edges:
                if edge.source_handle == handle:
                    return edge.target
            return None

        for edge in edges:
            if edge.source_handle is None:
                return edge.target
        if len(edges) == 1:
            return edges[0].target
        return None

    def adjacency(self) -> Dict[str, List[str]]:
        """Plain adjacency mapping, node id to target ids, in edge order."""
        return {
            node_id: [edge.target for edge in edges]
            for node_id, edges in self._outgoing.items()
        }

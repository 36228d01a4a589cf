"""Static checks a workflow must pass before it may be activated."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from ..models.core import (
    IssueSeverity, NodeType, ValidationIssue, ValidationResult, WorkflowDefinition
)
from .graph import GraphModel
from .logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class NodeRule:
    """Edge bounds and required configuration for one node type."""
    max_incoming: Optional[int]
    max_outgoing: Optional[int]
    requires_outgoing: bool
    required_fields: Tuple[str, ...]


# max_incoming None means unbounded. "a|b" in required_fields means either field satisfies.
NODE_RULES: Dict[NodeType, NodeRule] = {
    NodeType.TRIGGER: NodeRule(0, 1, True, ("trigger_type",)),
    NodeType.MESSAGE: NodeRule(None, 1, False, ("custom_message|template_id",)),
    NodeType.DELAY: NodeRule(None, 1, True, ("amount", "unit")),
    NodeType.CONDITION: NodeRule(None, 2, True, ("field", "operator")),
    NodeType.ACTION: NodeRule(None, 1, False, ("action_type",)),
    NodeType.WAIT_UNTIL: NodeRule(None, 2, True, ("event_type",)),
    NodeType.SPLIT: NodeRule(None, 10, True, ("branches",)),
    NodeType.WEBHOOK: NodeRule(None, 2, False, ("url", "method")),
    NodeType.AI: NodeRule(None, 1, False, ("action",)),
    NodeType.GOAL: NodeRule(None, 0, False, ("goal_name",)),
}

CONDITION_HANDLES = frozenset({"true", "false"})


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and len(value) == 0)


def lookup_path(data: Any, path: str) -> Any:
    """Resolve a dot path over nested dicts and pydantic models."""
    value = data
    for key in path.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(key)
        else:
            value = getattr(value, key, None)
    return value


class GraphValidator:
    """Validates workflow graphs and reports every problem found."""

    def __init__(self, rules: Optional[Dict[NodeType, NodeRule]] = None):
        self.rules = rules or NODE_RULES

    def validate(self, workflow: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition.

        Args:
            workflow: Candidate workflow definition

        Returns:
            ValidationResult listing errors and warnings. ``is_valid`` is False
            when at least one error-severity issue was found.
        """
        graph = GraphModel(workflow)
        issues: List[ValidationIssue] = []

        triggers = graph.nodes_of_type(NodeType.TRIGGER)
        if not triggers:
            issues.append(self._error("missing trigger: workflow must have exactly one trigger node"))
        elif len(triggers) > 1:
            issues.append(self._error(
                f"multiple triggers: workflow can only have one trigger node (found {len(triggers)})"
            ))

        for edge in graph.dangling_edges:
            missing = [n for n in (edge.source, edge.target) if not graph.has_node(n)]
            issues.append(self._error(
                f"Edge references unknown node(s): {', '.join(missing)}",
                edge_id=edge.id
            ))

        for node in graph.nodes:
            issues.extend(self._validate_node(graph, node))

        for node in graph.nodes:
            if node.type != NodeType.TRIGGER.value and not graph.incoming(node.id):
                issues.append(ValidationIssue(
                    node_id=node.id,
                    message="unreachable: node is not connected to workflow",
                    severity=IssueSeverity.WARNING
                ))

        if len(triggers) == 1:
            cycle_node = self._find_cycle(graph, triggers[0].id)
            if cycle_node is not None:
                issues.append(self._error(
                    f"circular dependency: workflow contains a cycle through node '{cycle_node}'",
                    node_id=cycle_node
                ))

        is_valid = not any(issue.severity == IssueSeverity.ERROR for issue in issues)
        if not is_valid:
            logger.debug(
                f"Workflow {workflow.id} failed validation with "
                f"{sum(1 for i in issues if i.severity == IssueSeverity.ERROR)} error(s)"
            )
        return ValidationResult(is_valid=is_valid, errors=issues)

    def _validate_node(self, graph: GraphModel, node) -> List[ValidationIssue]:
        """Apply edge bounds, required fields and handle rules to one node."""
        issues: List[ValidationIssue] = []
        rule = self.rules.get(NodeType(node.type))
        if rule is None:
            return issues

        incoming = graph.incoming(node.id)
        outgoing = graph.outgoing(node.id)

        if rule.max_incoming is not None and len(incoming) > rule.max_incoming:
            issues.append(self._error(
                f"Node cannot have more than {rule.max_incoming} incoming connections",
                node_id=node.id
            ))
        if rule.requires_outgoing and not outgoing:
            issues.append(self._error(
                "Node must have at least one outgoing connection", node_id=node.id
            ))
        if rule.max_outgoing is not None and len(outgoing) > rule.max_outgoing:
            issues.append(self._error(
                f"Node cannot have more than {rule.max_outgoing} outgoing connections",
                node_id=node.id
            ))

        for field in rule.required_fields:
            alternatives = field.split("|")
            if all(_is_empty(lookup_path(node.data, path)) for path in alternatives):
                issues.append(self._error(f"Required field missing: {field}", node_id=node.id))

        if node.type == NodeType.CONDITION.value:
            handles = {edge.source_handle for edge in outgoing}
            for expected in sorted(CONDITION_HANDLES - handles):
                issues.append(self._error(
                    f"Condition node requires a '{expected}' branch", node_id=node.id
                ))
            for edge in outgoing:
                if edge.source_handle not in CONDITION_HANDLES:
                    issues.append(self._error(
                        f"Condition node has unexpected branch '{edge.source_handle or '<unnamed>'}'",
                        node_id=node.id,
                        edge_id=edge.id
                    ))

        if node.type == NodeType.SPLIT.value and node.data.branches:
            handles = {edge.source_handle for edge in outgoing}
            for branch in node.data.branches:
                if branch.id not in handles:
                    issues.append(self._error(
                        f"Split branch '{branch.id}' has no outgoing connection", node_id=node.id
                    ))

        return issues

    @staticmethod
    def _find_cycle(graph: GraphModel, start: str) -> Optional[str]:
        """DFS with a recursion stack from ``start``; returns a node on a cycle, if any."""
        adjacency = graph.adjacency()
        visited: Set[str] = set()
        rec_stack: Set[str] = set()

        def visit(node_id: str) -> Optional[str]:
            visited.add(node_id)
            rec_stack.add(node_id)
            for neighbor in adjacency.get(node_id, []):
                if neighbor not in visited:
                    found = visit(neighbor)
                    if found is not None:
                        return found
                elif neighbor in rec_stack:
                    return neighbor
            rec_stack.remove(node_id)
            return None

        return visit(start)

    @staticmethod
    def _error(message: str, node_id: Optional[str] = None,
               edge_id: Optional[str] = None) -> ValidationIssue:
        return ValidationIssue(
            node_id=node_id, edge_id=edge_id, message=message, severity=IssueSeverity.ERROR
        )

"""Base types shared by all node executors."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Set

from ..core.collaborators import (
    ActionClient,
    AIClient,
    MessagingClient,
    WebhookClient,
)
from ..core.exceptions import ConfigurationError
from ..core.graph import GraphModel
from ..core.graph_validator import lookup_path
from ..models.core import Execution, NodeType, WakeCondition


@dataclass(frozen=True)
class NodeOutcome:
    """
    Result of running one node.

    ``next_handle`` selects the outgoing edge (None follows the default edge),
    ``suspend`` parks the execution until the wake condition holds, and
    ``terminal`` ends the execution regardless of outgoing edges.
    """
    next_handle: Optional[str] = None
    suspend: Optional[WakeCondition] = None
    context_updates: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    terminal: bool = False


@dataclass
class ExecutorServices:
    """Collaborators available to executors."""
    messaging: MessagingClient
    actions: ActionClient
    ai: AIClient
    webhooks: WebhookClient
    allocator: Any = None
    webhook_timeout: int = 15


@dataclass
class ExecutionContext:
    """Everything a node executor may read while running."""
    execution: Execution
    graph: GraphModel
    contact: Dict[str, Any]
    now: datetime
    services: ExecutorServices

    def resolve(self, path: str) -> Any:
        """Look a dot path up in the contact record, then in the execution context."""
        value = lookup_path(self.contact, path)
        if value is None:
            value = lookup_path(self.execution.context, path)
        return value


NO_EDGE = object()


def choose_handle(graph: GraphModel, node_id: str, preferred: str, reserved: Set[str]):
    """
    Return ``preferred`` when an edge carries it, otherwise the handle of the
    first edge whose handle is not reserved (possibly None). Returns NO_EDGE
    when neither exists.
    """
    handles = graph.handles(node_id)
    if preferred in handles:
        return preferred
    for handle in handles:
        if handle not in reserved:
            return handle
    return NO_EDGE


class AbstractNodeExecutor:
    """Base class for all node executors."""

    node_type: ClassVar[NodeType]

    def execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        """
        Run a node.

        Raises:
            TransientExecutorError: For failures worth retrying
            LogicExecutorError: For malformed configuration or data
        """
        return self.do_execute(node, ctx)

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        raise NotImplementedError("Subclasses must implement do_execute()")

    def on_resume(self, node, ctx: ExecutionContext, wake: WakeCondition) -> NodeOutcome:
        """Pick the way out of a node whose wait has been satisfied."""
        return NodeOutcome()


class NodeExecutorRegistry:
    """Maps node types to executor instances."""

    def __init__(self):
        self._executors: Dict[NodeType, AbstractNodeExecutor] = {}

    def register(self, executor: AbstractNodeExecutor) -> None:
        self._executors[NodeType(executor.node_type)] = executor

    def get(self, node_type) -> AbstractNodeExecutor:
        try:
            return self._executors[NodeType(node_type)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(
                f"No executor registered for node type {node_type!r}", config_key="executors"
            ) from exc

    def registered_types(self) -> Set[NodeType]:
        return set(self._executors)

    def ensure_complete(self) -> "NodeExecutorRegistry":
        """Raise ConfigurationError unless every NodeType has an executor."""
        missing = sorted(t.value for t in set(NodeType) - self.registered_types())
        if missing:
            raise ConfigurationError(
                f"Missing executors for node types: {', '.join(missing)}", config_key="executors"
            )
        return self

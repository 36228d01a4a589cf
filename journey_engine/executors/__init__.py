"""Node executors, one per node type."""

from .base import (
    AbstractNodeExecutor,
    ExecutionContext,
    ExecutorServices,
    NodeExecutorRegistry,
    NodeOutcome,
)
from .action import ActionExecutor
from .ai import AIExecutor
from .logic import ConditionExecutor, GoalExecutor, TriggerExecutor
from .messaging import MessageExecutor
from .split import SplitExecutor
from .timing import DelayExecutor, WaitUntilExecutor
from .webhook import WebhookExecutor


def build_default_registry() -> NodeExecutorRegistry:
    """Registry with an executor for every node type."""
    registry = NodeExecutorRegistry()
    for executor in (
        TriggerExecutor(),
        MessageExecutor(),
        DelayExecutor(),
        ConditionExecutor(),
        ActionExecutor(),
        WaitUntilExecutor(),
        SplitExecutor(),
        WebhookExecutor(),
        AIExecutor(),
        GoalExecutor(),
    ):
        registry.register(executor)
    return registry.ensure_complete()


__all__ = [
    "AbstractNodeExecutor",
    "ExecutionContext",
    "ExecutorServices",
    "NodeExecutorRegistry",
    "NodeOutcome",
    "build_default_registry",
]

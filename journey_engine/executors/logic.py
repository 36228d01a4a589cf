"""Trigger, condition and goal executors."""

from typing import Any, List

from ..core.exceptions import LogicExecutorError
from ..core.logging import get_logger
from ..models.core import ConditionRule, NodeType
from .base import AbstractNodeExecutor, ExecutionContext, NodeOutcome

logger = get_logger(__name__)

OPERATORS = (
    "equals", "not_equals", "contains", "not_contains",
    "greater_than", "less_than", "is_empty", "is_not_empty",
)

# Condition fields that name a contact attribute rather than a path.
FIELD_ALIASES = {"tag": "tags"}


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, dict, set)) and not value)


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    return left is not None and right is not None and str(left) == str(right)


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set)):
        return any(_equals(item, needle) for item in haystack)
    if haystack is None:
        return False
    return str(needle).lower() in str(haystack).lower()


def _compare(left: Any, right: Any, greater: bool) -> bool:
    try:
        a, b = float(left), float(right)
    except (TypeError, ValueError):
        return False
    return a > b if greater else a < b


def evaluate_rule(field_value: Any, operator: str, expected: Any) -> bool:
    """
    Apply one comparison operator.

    Raises:
        LogicExecutorError: If the operator is unknown
    """
    if operator == "equals":
        return _equals(field_value, expected)
    if operator == "not_equals":
        return not _equals(field_value, expected)
    if operator == "contains":
        return _contains(field_value, expected)
    if operator == "not_contains":
        return not _contains(field_value, expected)
    if operator == "greater_than":
        return _compare(field_value, expected, greater=True)
    if operator == "less_than":
        return _compare(field_value, expected, greater=False)
    if operator == "is_empty":
        return _is_empty(field_value)
    if operator == "is_not_empty":
        return not _is_empty(field_value)
    raise LogicExecutorError(f"Unknown condition operator: {operator!r}")


def evaluate_rules(rules: List[ConditionRule], ctx: ExecutionContext) -> bool:
    """Fold rules left to right; each rule's logical_operator joins it to the next."""
    if not rules:
        return True
    result = evaluate_rule(_resolve(ctx, rules[0].field), rules[0].operator, rules[0].value)
    for previous, rule in zip(rules, rules[1:]):
        outcome = evaluate_rule(_resolve(ctx, rule.field), rule.operator, rule.value)
        if previous.logical_operator == "OR":
            result = result or outcome
        else:
            result = result and outcome
    return result


def _resolve(ctx: ExecutionContext, field: str) -> Any:
    return ctx.resolve(FIELD_ALIASES.get(field, field))


class TriggerExecutor(AbstractNodeExecutor):
    node_type = NodeType.TRIGGER

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        return NodeOutcome(output={"trigger_type": node.data.trigger_type})


class ConditionExecutor(AbstractNodeExecutor):
    """Evaluates a condition and branches on the ``true``/``false`` handle."""

    node_type = NodeType.CONDITION

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        if config.conditions:
            met = evaluate_rules(config.conditions, ctx)
        else:
            if not config.field or not config.operator:
                raise LogicExecutorError(
                    "Condition node requires a field and an operator", node_id=node.id
                )
            met = evaluate_rule(_resolve(ctx, config.field), config.operator, config.value)

        logger.debug(f"Condition {node.id} evaluated to {met}")
        return NodeOutcome(
            next_handle="true" if met else "false",
            context_updates={f"condition_{node.id}": met},
            output={"condition_met": met},
        )


class GoalExecutor(AbstractNodeExecutor):
    """Records a conversion and ends the execution."""

    node_type = NodeType.GOAL

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        record = {
            "goal_name": node.data.goal_name,
            "goal_type": node.data.goal_type,
            "achieved_at": ctx.now.isoformat(),
        }
        logger.info(f"Goal '{node.data.goal_name}' reached by execution {ctx.execution.id}")
        return NodeOutcome(
            context_updates={f"goal_{node.id}": record},
            output=record,
            terminal=True,
        )

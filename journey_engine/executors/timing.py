"""Delay and wait-for-event executors."""

from datetime import timedelta
from typing import Optional

from ..core.clock import to_naive_utc
from ..core.exceptions import LogicExecutorError
from ..models.core import NodeType, WakeCondition, WakeKind
from .base import NO_EDGE, AbstractNodeExecutor, ExecutionContext, NodeOutcome, choose_handle

WAIT_HANDLES = {"event", "timeout"}

UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
}

SPECIFIC_DATE = "specific_date"


def duration(amount: Optional[float], unit: Optional[str], node_id: Optional[str] = None) -> timedelta:
    """
    Convert an amount and unit into a timedelta.

    Raises:
        LogicExecutorError: For a missing, non-positive amount or an unknown unit
    """
    if unit not in UNIT_SECONDS:
        raise LogicExecutorError(f"Unknown delay unit: {unit!r}", node_id=node_id)
    if amount is None or amount <= 0:
        raise LogicExecutorError(f"Delay amount must be positive, got {amount!r}", node_id=node_id)
    return timedelta(seconds=amount * UNIT_SECONDS[unit])


class DelayExecutor(AbstractNodeExecutor):
    node_type = NodeType.DELAY

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        wake_at = ctx.now + duration(node.data.amount, node.data.unit, node.id)
        return NodeOutcome(
            suspend=WakeCondition(kind=WakeKind.TIME, node_id=node.id, wake_at=wake_at),
            output={"resume_at": wake_at.isoformat()},
        )


class WaitUntilExecutor(AbstractNodeExecutor):
    """
    Waits for a named contact event, with an optional timeout.

    The ``specific_date`` event type waits for an absolute time instead and
    proceeds immediately when that time has already passed.
    """

    node_type = NodeType.WAIT_UNTIL

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        if not config.event_type:
            raise LogicExecutorError("wait_until node requires an event_type", node_id=node.id)

        if config.event_type == SPECIFIC_DATE:
            if config.date is None:
                raise LogicExecutorError("specific_date wait requires a date", node_id=node.id)
            wake_at = to_naive_utc(config.date)
            if wake_at <= ctx.now:
                return NodeOutcome(output={"resume_at": wake_at.isoformat(), "skipped": True})
            return NodeOutcome(
                suspend=WakeCondition(kind=WakeKind.TIME, node_id=node.id, wake_at=wake_at),
                output={"resume_at": wake_at.isoformat()},
            )

        timeout_at = None
        if config.timeout_amount is not None:
            timeout_at = ctx.now + duration(config.timeout_amount, config.timeout_unit, node.id)

        return NodeOutcome(
            suspend=WakeCondition(
                kind=WakeKind.EVENT,
                node_id=node.id,
                event_type=config.event_type,
                timeout_at=timeout_at,
            ),
            output={
                "event_type": config.event_type,
                "timeout_at": timeout_at.isoformat() if timeout_at else None,
            },
        )

    def on_resume(self, node, ctx: ExecutionContext, wake: WakeCondition) -> NodeOutcome:
        if wake.kind != WakeKind.EVENT:
            return NodeOutcome()

        outcome = "event" if wake.event_received else "timeout"
        handle = choose_handle(ctx.graph, node.id, outcome, WAIT_HANDLES)
        return NodeOutcome(
            next_handle=None if handle is NO_EDGE else handle,
            context_updates={f"wait_{node.id}": outcome},
            output={"outcome": outcome},
            terminal=handle is NO_EDGE,
        )

"""Workflow analytics derived from stored execution history."""

from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from ..models.analytics import (
    AnalyticsOverview,
    FunnelStage,
    NodePerformance,
    SplitBranchResult,
    TimeSeriesPoint,
    WorkflowAnalytics,
)
from ..models.core import Execution, ExecutionStatusEnum, NodeType
from .clock import utcnow
from .graph import GraphModel
from .logging import get_logger

logger = get_logger(__name__)

_ACTIVE = (ExecutionStatusEnum.RUNNING, ExecutionStatusEnum.WAITING)


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def format_duration(seconds: Optional[float]) -> str:
    """Human readable duration: ``2d 3h``, ``4h 5m``, ``6m 7s`` or ``8s``."""
    if seconds is None:
        return "N/A"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def is_conversion(execution: Execution, graph: GraphModel) -> bool:
    """An execution converts when its path touches a goal node."""
    goal_ids = {node.id for node in graph.nodes_of_type(NodeType.GOAL)}
    return any(node_id in goal_ids for node_id in execution.execution_path)


def overview(executions: Sequence[Execution], graph: GraphModel) -> AnalyticsOverview:
    total = len(executions)
    completed = [e for e in executions if e.status == ExecutionStatusEnum.COMPLETED]
    failed = sum(1 for e in executions if e.status == ExecutionStatusEnum.FAILED)
    active = sum(1 for e in executions if e.status in _ACTIVE)
    conversions = sum(1 for e in executions if is_conversion(e, graph))

    durations = [
        (e.completed_at - e.started_at).total_seconds()
        for e in completed
        if e.started_at is not None and e.completed_at is not None
    ]
    average = sum(durations) / len(durations) if durations else None

    return AnalyticsOverview(
        total_executions=total,
        completed_executions=len(completed),
        failed_executions=failed,
        active_executions=active,
        success_rate=_percent(len(completed), total),
        conversion_rate=_percent(conversions, total),
        avg_completion_seconds=average,
        avg_completion_time=format_duration(average),
    )


def time_series(executions: Iterable[Execution], graph: GraphModel,
                start: date, end: date) -> List[TimeSeriesPoint]:
    """One point per calendar day in [start, end], bucketed by creation date."""
    points = {}
    day = start
    while day <= end:
        points[day] = TimeSeriesPoint(date=day.isoformat())
        day += timedelta(days=1)

    for execution in executions:
        if execution.created_at is None:
            continue
        point = points.get(execution.created_at.date())
        if point is None:
            continue
        point.executions += 1
        if is_conversion(execution, graph):
            point.conversions += 1
        if execution.status == ExecutionStatusEnum.COMPLETED:
            point.completed += 1
        elif execution.status == ExecutionStatusEnum.FAILED:
            point.failed += 1

    return list(points.values())


def node_performance(executions: Sequence[Execution], graph: GraphModel) -> List[NodePerformance]:
    results = []
    for node in graph.nodes:
        visits = sum(1 for e in executions if node.id in e.execution_path)
        errors = sum(1 for e in executions if e.error_node_id == node.id)
        results.append(NodePerformance(
            node_id=node.id,
            node_type=node.type,
            label=node.data.label,
            executions=visits,
            errors=errors,
            error_rate=_percent(errors, visits),
        ))
    return results


def funnel(executions: Sequence[Execution], graph: GraphModel) -> List[FunnelStage]:
    """
    Conversion funnel built from the node types present in the graph.

    Stages are Started, Message Sent, Condition Met (only when some execution
    passed a condition) and Converted, each relative to Started.
    """
    started = len(executions)
    if not graph.nodes or not started:
        return [FunnelStage(stage="Started", count=started, percentage=100.0)]

    stages = []
    if graph.nodes_of_type(NodeType.TRIGGER):
        stages.append(FunnelStage(stage="Started", count=started, percentage=100.0))

    message_ids = {n.id for n in graph.nodes_of_type(NodeType.MESSAGE)}
    if message_ids:
        sent = sum(1 for e in executions if message_ids.intersection(e.execution_path))
        stages.append(FunnelStage(stage="Message Sent", count=sent, percentage=_percent(sent, started)))

    condition_ids = [n.id for n in graph.nodes_of_type(NodeType.CONDITION)]
    if condition_ids:
        passed = sum(
            1 for e in executions
            if any(e.context.get(f"condition_{node_id}") is True for node_id in condition_ids)
        )
        if passed:
            stages.append(FunnelStage(stage="Condition Met", count=passed,
                                      percentage=_percent(passed, started)))

    if graph.nodes_of_type(NodeType.GOAL):
        converted = sum(1 for e in executions if is_conversion(e, graph))
        stages.append(FunnelStage(stage="Converted", count=converted,
                                  percentage=_percent(converted, started)))

    return stages or [FunnelStage(stage="No Data", count=0, percentage=0.0)]


def split_results(executions: Sequence[Execution], graph: GraphModel) -> List[SplitBranchResult]:
    """Per split node and branch: executions routed there and how many converted."""
    results = []
    for node in graph.nodes_of_type(NodeType.SPLIT):
        marker = f"split_{node.id}"
        for branch in node.data.branches or []:
            routed = [e for e in executions if e.context.get(marker) == branch.id]
            converted = sum(1 for e in routed if is_conversion(e, graph))
            results.append(SplitBranchResult(
                node_id=node.id,
                branch_id=branch.id,
                branch_name=branch.name or f"Variant {branch.id}",
                executions=len(routed),
                conversions=converted,
                conversion_rate=_percent(converted, len(routed)),
            ))
    return results


class AnalyticsService:
    """Loads execution history in bulk and summarises it. Never writes."""

    def __init__(self, graph_manager, store, clock: Callable[[], datetime] = utcnow):
        self.graph_manager = graph_manager
        self.store = store
        self._clock = clock

    def get_workflow_analytics(self, workflow_id: str, days: int = 7) -> WorkflowAnalytics:
        """
        Analytics over executions created during the last ``days`` calendar days.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        days = max(1, days)
        graph = self.graph_manager.get_graph(workflow_id)
        end = self._clock().date()
        start = end - timedelta(days=days - 1)
        since = datetime.combine(start, datetime.min.time())
        executions = self.store.list_executions(workflow_id, since=since)
        logger.debug(f"Aggregating {len(executions)} execution(s) of workflow {workflow_id}")

        return WorkflowAnalytics(
            workflow_id=workflow_id,
            days=days,
            overview=overview(executions, graph),
            time_series=time_series(executions, graph, start, end),
            node_performance=node_performance(executions, graph),
            funnel=funnel(executions, graph),
            ab_test_results=split_results(executions, graph),
        )

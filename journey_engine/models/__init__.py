"""Data models for the journey engine."""

from .core import (
    NodeType,
    WorkflowStatus,
    ExecutionStatusEnum,
    TERMINAL_STATUSES,
    WakeKind,
    IssueSeverity,
    LogEventType,
    Node,
    Edge,
    WorkflowSettings,
    WorkflowDefinition,
    ValidationIssue,
    ValidationResult,
    WakeCondition,
    Execution,
    ExecutionLogEntry,
    WorkflowSummary,
    TriggerResult,
)
from .ab_testing import (
    ABTestStatus,
    WinningMetric,
    MetricEvent,
    VariantMetrics,
    ABVariant,
    ABTest,
    SignificanceResult,
)

__all__ = [
    "NodeType",
    "WorkflowStatus",
    "ExecutionStatusEnum",
    "TERMINAL_STATUSES",
    "WakeKind",
    "IssueSeverity",
    "LogEventType",
    "Node",
    "Edge",
    "WorkflowSettings",
    "WorkflowDefinition",
    "ValidationIssue",
    "ValidationResult",
    "WakeCondition",
    "Execution",
    "ExecutionLogEntry",
    "WorkflowSummary",
    "TriggerResult",
    "ABTestStatus",
    "WinningMetric",
    "MetricEvent",
    "VariantMetrics",
    "ABVariant",
    "ABTest",
    "SignificanceResult",
]

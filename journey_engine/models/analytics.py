"""Response models for workflow analytics."""

from typing import List, Optional
from pydantic import BaseModel, Field


class AnalyticsOverview(BaseModel):
    total_executions: int = 0
    completed_executions: int = 0
    failed_executions: int = 0
    active_executions: int = 0
    success_rate: float = Field(0.0, description="Completed / total, percent")
    conversion_rate: float = Field(0.0, description="Executions reaching a goal / total, percent")
    avg_completion_seconds: Optional[float] = None
    avg_completion_time: str = "N/A"


class TimeSeriesPoint(BaseModel):
    date: str
    executions: int = 0
    conversions: int = 0
    completed: int = 0
    failed: int = 0


class NodePerformance(BaseModel):
    node_id: str
    node_type: str
    label: Optional[str] = None
    executions: int = 0
    errors: int = 0
    error_rate: float = 0.0


class FunnelStage(BaseModel):
    stage: str
    count: int = 0
    percentage: float = 0.0


class SplitBranchResult(BaseModel):
    node_id: str
    branch_id: str
    branch_name: Optional[str] = None
    executions: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0


class WorkflowAnalytics(BaseModel):
    workflow_id: str
    days: int
    overview: AnalyticsOverview
    time_series: List[TimeSeriesPoint] = Field(default_factory=list)
    node_performance: List[NodePerformance] = Field(default_factory=list)
    funnel: List[FunnelStage] = Field(default_factory=list)
    ab_test_results: List[SplitBranchResult] = Field(default_factory=list)

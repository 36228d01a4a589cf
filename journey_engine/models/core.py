"""Core Pydantic models for workflow graphs and executions."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Enumeration of workflow node kinds."""
    TRIGGER = "trigger"
    MESSAGE = "message"
    DELAY = "delay"
    CONDITION = "condition"
    ACTION = "action"
    WAIT_UNTIL = "wait_until"
    SPLIT = "split"
    WEBHOOK = "webhook"
    AI = "ai"
    GOAL = "goal"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.CANCELLED,
})


class WakeKind(str, Enum):
    """What a suspended execution is waiting for."""
    TIME = "time"
    EVENT = "event"
    RETRY = "retry"


class IssueSeverity(str, Enum):
    """Severity of a validation issue."""
    ERROR = "error"
    WARNING = "warning"


class LogEventType(str, Enum):
    """Per-node execution log statuses."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Node configuration payloads. Fields the validator requires are optional here so
# that a missing value surfaces as a validation issue rather than a parse error.

class _NodeConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: Optional[str] = None
    description: Optional[str] = None


class TriggerConfig(_NodeConfig):
    trigger_type: Optional[str] = Field(None, description="Event kind that starts the journey")
    trigger_config: Dict[str, Any] = Field(default_factory=dict)


class MessageConfig(_NodeConfig):
    custom_message: Optional[str] = None
    template_id: Optional[str] = None
    template_variables: Dict[str, str] = Field(default_factory=dict)
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    use_contact_name: bool = False
    fallback_name: str = "there"


class DelayConfig(_NodeConfig):
    amount: Optional[float] = None
    unit: Optional[str] = Field(None, description="minutes, hours, days or weeks")


class ConditionRule(BaseModel):
    """One clause of a compound condition."""
    field: str
    operator: str
    value: Any = None
    logical_operator: Literal["AND", "OR"] = "AND"


class ConditionConfig(_NodeConfig):
    field: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None
    conditions: List[ConditionRule] = Field(default_factory=list)


class ActionConfig(_NodeConfig):
    action_type: Optional[str] = None
    tag_ids: List[str] = Field(default_factory=list)
    field_name: Optional[str] = None
    field_value: Optional[Any] = None
    list_id: Optional[str] = None
    notification_email: Optional[str] = None
    notification_message: Optional[str] = None


class WaitUntilConfig(_NodeConfig):
    event_type: Optional[str] = Field(None, description="Event name, or 'specific_date'")
    timeout_amount: Optional[float] = None
    timeout_unit: Optional[str] = None
    date: Optional[datetime] = Field(None, description="Absolute wake time for specific_date waits")


class SplitBranch(BaseModel):
    id: str
    name: Optional[str] = None
    percentage: float = 0.0


class SplitConfig(_NodeConfig):
    branches: Optional[List[SplitBranch]] = None
    test_id: Optional[str] = Field(None, description="A/B test bound to this step")
    winner_branch_id: Optional[str] = None


class WebhookAuth(BaseModel):
    type: Literal["none", "basic", "bearer", "api_key"] = "none"
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: str = "X-API-Key"


class WebhookConfig(_NodeConfig):
    url: Optional[str] = None
    method: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    auth: WebhookAuth = Field(default_factory=WebhookAuth)
    timeout: Optional[int] = None
    response_field: Optional[str] = None


class AIConfig(_NodeConfig):
    action: Optional[str] = Field(
        None,
        description="sentiment_analysis, categorize, extract_info, generate_response or translate"
    )
    input_field: Optional[str] = None
    model: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class GoalConfig(_NodeConfig):
    goal_name: Optional[str] = None
    goal_type: str = "custom"


class _NodeBase(BaseModel):
    id: str = Field(..., description="Unique identifier for the node")
    position: Optional[Dict[str, float]] = None

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not blank."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()


class TriggerNode(_NodeBase):
    type: Literal["trigger"] = "trigger"
    data: TriggerConfig = Field(default_factory=TriggerConfig)


class MessageNode(_NodeBase):
    type: Literal["message"] = "message"
    data: MessageConfig = Field(default_factory=MessageConfig)


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    data: DelayConfig = Field(default_factory=DelayConfig)


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    data: ConditionConfig = Field(default_factory=ConditionConfig)


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    data: ActionConfig = Field(default_factory=ActionConfig)


class WaitUntilNode(_NodeBase):
    type: Literal["wait_until"] = "wait_until"
    data: WaitUntilConfig = Field(default_factory=WaitUntilConfig)


class SplitNode(_NodeBase):
    type: Literal["split"] = "split"
    data: SplitConfig = Field(default_factory=SplitConfig)


class WebhookNode(_NodeBase):
    type: Literal["webhook"] = "webhook"
    data: WebhookConfig = Field(default_factory=WebhookConfig)


class AINode(_NodeBase):
    type: Literal["ai"] = "ai"
    data: AIConfig = Field(default_factory=AIConfig)


class GoalNode(_NodeBase):
    type: Literal["goal"] = "goal"
    data: GoalConfig = Field(default_factory=GoalConfig)


Node = Annotated[
    Union[
        TriggerNode, MessageNode, DelayNode, ConditionNode, ActionNode,
        WaitUntilNode, SplitNode, WebhookNode, AINode, GoalNode,
    ],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    """Directed connection between two nodes, optionally leaving a named handle."""
    id: str = Field(..., description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, description="Named output of the source node")


class WorkflowSettings(BaseModel):
    allow_reentry: bool = False
    stop_on_error: bool = False
    track_conversions: bool = True
    max_executions_per_contact: Optional[int] = Field(None, ge=1)
    max_retries: Optional[int] = Field(None, ge=0, description="Overrides the engine default")


class WorkflowDefinition(BaseModel):
    """Complete definition of a contact journey."""
    id: str = Field(..., description="Workflow ID")
    organization_id: Optional[str] = None
    name: str = Field(..., description="Name of the workflow")
    description: str = ""
    version: int = 1
    status: WorkflowStatus = WorkflowStatus.DRAFT
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()


class ValidationIssue(BaseModel):
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR


class ValidationResult(BaseModel):
    """Result of graph validation. Only error-severity issues block activation."""
    is_valid: bool = Field(..., description="Whether the graph may be activated")
    errors: List[ValidationIssue] = Field(default_factory=list)

    @property
    def blocking(self) -> List[ValidationIssue]:
        return [e for e in self.errors if e.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [e for e in self.errors if e.severity == IssueSeverity.WARNING]


class WakeCondition(BaseModel):
    """Persisted description of when a waiting execution may resume."""
    kind: WakeKind
    node_id: str
    wake_at: Optional[datetime] = Field(None, description="Absolute naive-UTC wake time")
    event_type: Optional[str] = None
    timeout_at: Optional[datetime] = None
    event_received: bool = False

    def is_satisfied(self, now: datetime) -> bool:
        """Whether the execution may resume at ``now``."""
        if self.kind == WakeKind.EVENT:
            return self.event_received or self.timed_out(now)
        return self.wake_at is not None and self.wake_at <= now

    def timed_out(self, now: datetime) -> bool:
        return (
            self.kind == WakeKind.EVENT
            and not self.event_received
            and self.timeout_at is not None
            and self.timeout_at <= now
        )

    @property
    def due_at(self) -> Optional[datetime]:
        """Earliest time a timer sweep should look at this condition."""
        if self.kind == WakeKind.EVENT:
            return self.timeout_at
        return self.wake_at


class Execution(BaseModel):
    """One contact's run through one workflow."""
    id: str
    workflow_id: str
    contact_id: str
    organization_id: Optional[str] = None
    status: ExecutionStatusEnum = ExecutionStatusEnum.PENDING
    current_node_id: Optional[str] = None
    execution_path: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None
    retry_count: int = 0
    wake_condition: Optional[WakeCondition] = None
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionLogEntry(BaseModel):
    """Log entry for a single node execution."""
    id: Optional[int] = None
    execution_id: str
    node_id: str
    node_type: str
    status: LogEventType
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str
    name: str
    status: WorkflowStatus
    version: int
    node_count: int
    updated_at: Optional[datetime] = None


class TriggerResult(BaseModel):
    """Outcome of routing one trigger event to one workflow."""
    workflow_id: str
    triggered: bool
    reason: Optional[str] = None
    execution: Optional[Execution] = None

"""FastAPI REST endpoints for the journey engine."""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.ab_allocator import ABAllocator
from ..core.analytics import AnalyticsService
from ..core.execution_engine import ExecutionEngine
from ..core.graph_manager import GraphManager
from ..core.exceptions import (
    ABTestError,
    ExecutionEngineError,
    ExecutionNotFoundError,
    GraphValidationError,
    JourneyEngineError,
    NotFoundError,
    create_error_response,
)
from ..core.logging import get_logger
from ..models.ab_testing import (
    ABTest,
    ABTestCreate,
    ABVariant,
    ABVariantCreate,
    MetricEvent,
    SignificanceResult,
    VariantMetrics,
)
from ..models.analytics import WorkflowAnalytics
from ..models.core import (
    Execution,
    ExecutionLogEntry,
    TriggerResult,
    ValidationResult,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowSummary,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["journeys"])

# Global instances (initialized in main.py)
_graph_manager: Optional[GraphManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_ab_allocator: Optional[ABAllocator] = None
_analytics: Optional[AnalyticsService] = None


def init_dependencies(
    graph_manager: GraphManager,
    execution_engine: ExecutionEngine,
    ab_allocator: ABAllocator,
    analytics: AnalyticsService,
):
    """Initialize the global dependencies."""
    global _graph_manager, _execution_engine, _ab_allocator, _analytics
    _graph_manager = graph_manager
    _execution_engine = execution_engine
    _ab_allocator = ab_allocator
    _analytics = analytics


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_graph_manager() -> GraphManager:
    if _graph_manager is None:
        raise _not_initialized("Graph manager")
    return _graph_manager


def get_execution_engine() -> ExecutionEngine:
    if _execution_engine is None:
        raise _not_initialized("Execution engine")
    return _execution_engine


def get_ab_allocator() -> ABAllocator:
    if _ab_allocator is None:
        raise _not_initialized("A/B allocator")
    return _ab_allocator


def get_analytics() -> AnalyticsService:
    if _analytics is None:
        raise _not_initialized("Analytics service")
    return _analytics


def _http_error(error: JourneyEngineError) -> HTTPException:
    """Map an engine error onto an HTTP status code."""
    if isinstance(error, (NotFoundError, ExecutionNotFoundError)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (GraphValidationError, ABTestError)):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, ExecutionEngineError):
        status_code = status.HTTP_409_CONFLICT
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"{type(error).__name__}: {error.message}")
    else:
        logger.warning(f"Request rejected with {status_code}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models
class CreateWorkflowResponse(BaseModel):
    workflow_id: str = Field(..., description="Identifier of the stored workflow")
    message: str
    validation_warnings: List[str] = Field(default_factory=list)


class ImportWorkflowRequest(BaseModel):
    """Request model for importing an exported workflow."""
    export: Dict[str, Any] = Field(..., description="Payload produced by the export endpoint")
    organization_id: Optional[str] = None
    workflow_id: Optional[str] = None


class StartExecutionRequest(BaseModel):
    workflow_id: str
    contact_id: str
    organization_id: Optional[str] = None
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)


class ContactEventRequest(BaseModel):
    """A contact event that may satisfy waiting wait_until steps."""
    contact_id: str
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ContactEventResponse(BaseModel):
    resumed: int
    execution_ids: List[str] = Field(default_factory=list)


class TriggerEventRequest(BaseModel):
    organization_id: str
    contact_id: str
    event_type: str = Field(..., description="Trigger type such as tag_applied or contact_added")
    data: Dict[str, Any] = Field(default_factory=dict)


class TriggerEventResponse(BaseModel):
    started: int
    results: List[TriggerResult] = Field(default_factory=list)


class VariantEventRequest(BaseModel):
    kind: MetricEvent


class DeclareWinnerRequest(BaseModel):
    variant_id: str


# Workflows

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a new workflow"
)
def create_workflow(
    workflow: WorkflowDefinition,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> CreateWorkflowResponse:
    """
    Store a workflow definition.

    Drafts are stored even when the graph has errors; an active workflow must
    validate cleanly. Validation warnings are returned either way.
    """
    try:
        result = graph_manager.validate_workflow(workflow)
        stored = graph_manager.create_workflow(workflow)
        return CreateWorkflowResponse(
            workflow_id=stored.id,
            message=f"Workflow '{stored.name}' created successfully",
            validation_warnings=[issue.message for issue in result.warnings]
        )
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/workflows", response_model=List[WorkflowSummary], summary="List workflows")
def list_workflows(
    organization_id: Optional[str] = None,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> List[WorkflowSummary]:
    try:
        return graph_manager.list_workflows(organization_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a workflow")
def validate_workflow(
    workflow: WorkflowDefinition,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> ValidationResult:
    return graph_manager.validate_workflow(workflow)


@router.post(
    "/workflows/import",
    response_model=WorkflowDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Import an exported workflow as a new draft"
)
def import_workflow(
    request: ImportWorkflowRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> WorkflowDefinition:
    try:
        return graph_manager.import_workflow(
            request.export, organization_id=request.organization_id, workflow_id=request.workflow_id
        )
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}", response_model=WorkflowDefinition, summary="Get a workflow")
def get_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> WorkflowDefinition:
    try:
        return graph_manager.get_workflow(workflow_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.put("/workflows/{workflow_id}", response_model=WorkflowDefinition, summary="Replace a workflow graph")
def update_workflow(
    workflow_id: str,
    workflow: WorkflowDefinition,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> WorkflowDefinition:
    try:
        return graph_manager.update_workflow(workflow.model_copy(update={"id": workflow_id}))
    except JourneyEngineError as e:
        raise _http_error(e)


@router.delete("/workflows/{workflow_id}", summary="Delete a workflow")
def delete_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, str]:
    try:
        graph_manager.delete_workflow(workflow_id)
        return {"message": f"Workflow {workflow_id} deleted successfully"}
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/workflows/{workflow_id}/activate", response_model=WorkflowDefinition,
             summary="Validate and activate a workflow")
def activate_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> WorkflowDefinition:
    try:
        return graph_manager.activate_workflow(workflow_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/workflows/{workflow_id}/pause", response_model=WorkflowDefinition,
             summary="Stop new executions of a workflow")
def pause_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> WorkflowDefinition:
    try:
        return graph_manager.set_status(workflow_id, WorkflowStatus.PAUSED)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}/export", summary="Export a workflow")
def export_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.export_workflow(workflow_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}/analytics", response_model=WorkflowAnalytics,
            summary="Execution analytics for a workflow")
def get_workflow_analytics(
    workflow_id: str,
    days: int = Query(7, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics)
) -> WorkflowAnalytics:
    try:
        return analytics.get_workflow_analytics(workflow_id, days)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.delete("/workflows/{workflow_id}/holds/{contact_id}",
               summary="Let a contact held out after a failure enter the workflow again")
def clear_reentry_hold(
    workflow_id: str,
    contact_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        cleared = engine.clear_reentry_hold(workflow_id, contact_id)
        return {"cleared": cleared}
    except JourneyEngineError as e:
        raise _http_error(e)


# Executions

@router.post("/executions", response_model=Execution, status_code=status.HTTP_201_CREATED,
             summary="Start a workflow for a contact")
def start_execution(
    request: StartExecutionRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    try:
        logger.info(f"Starting workflow {request.workflow_id} for contact {request.contact_id}")
        return engine.start_execution(
            request.workflow_id,
            request.contact_id,
            request.organization_id,
            request.trigger_payload or None,
        )
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}", response_model=Execution, summary="Get an execution")
def get_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    try:
        return engine.get_execution(execution_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}/logs", response_model=List[ExecutionLogEntry],
            summary="Node logs of an execution")
def get_execution_logs(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionLogEntry]:
    try:
        engine.get_execution(execution_id)
        return engine.get_execution_logs(execution_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/executions/{execution_id}/resume", response_model=Execution,
             summary="Resume a waiting execution")
def resume_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    try:
        return engine.resume(execution_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/executions/{execution_id}/cancel", response_model=Execution,
             summary="Cancel an execution")
def cancel_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    try:
        return engine.cancel(execution_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/events", response_model=ContactEventResponse, summary="Deliver a contact event")
def deliver_event(
    request: ContactEventRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ContactEventResponse:
    try:
        resumed = engine.on_external_event(request.contact_id, request.event_type, request.payload)
        return ContactEventResponse(resumed=len(resumed), execution_ids=[e.id for e in resumed])
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/triggers", response_model=TriggerEventResponse,
             summary="Start the workflows whose trigger matches a contact event")
def fire_trigger(
    request: TriggerEventRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> TriggerEventResponse:
    try:
        results = engine.on_trigger_event(
            request.organization_id, request.contact_id, request.event_type, request.data
        )
        return TriggerEventResponse(started=sum(1 for r in results if r.triggered), results=results)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/wakeups/process", response_model=ContactEventResponse,
             summary="Resume every execution whose wake time has passed")
def process_wakeups(engine: ExecutionEngine = Depends(get_execution_engine)) -> ContactEventResponse:
    try:
        resumed = engine.process_due_wakeups()
        return ContactEventResponse(resumed=len(resumed), execution_ids=[e.id for e in resumed])
    except JourneyEngineError as e:
        raise _http_error(e)


# A/B tests

@router.post("/ab-tests", response_model=ABTest, status_code=status.HTTP_201_CREATED,
             summary="Create an A/B test on a workflow step")
def create_ab_test(
    request: ABTestCreate,
    allocator: ABAllocator = Depends(get_ab_allocator)
) -> ABTest:
    try:
        return allocator.create_test(
            request.workflow_id,
            request.step_id,
            request.name,
            winning_metric=request.winning_metric,
            confidence_threshold=request.confidence_threshold,
            min_sample_size=request.min_sample_size,
        )
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/ab-tests/{test_id}", response_model=ABTest, summary="Get an A/B test")
def get_ab_test(test_id: str, allocator: ABAllocator = Depends(get_ab_allocator)) -> ABTest:
    try:
        return allocator.get_test(test_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/ab-tests/{test_id}/variants", response_model=ABVariant,
             status_code=status.HTTP_201_CREATED, summary="Add a variant")
def add_ab_variant(
    test_id: str,
    request: ABVariantCreate,
    allocator: ABAllocator = Depends(get_ab_allocator)
) -> ABVariant:
    try:
        return allocator.add_variant(
            test_id,
            request.name,
            request.traffic_allocation,
            message_content=request.message_content,
            template_id=request.template_id,
            template_variables=request.template_variables,
            is_control=request.is_control,
            branch_id=request.branch_id,
        )
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/ab-tests/{test_id}/start", response_model=ABTest, summary="Start an A/B test")
def start_ab_test(test_id: str, allocator: ABAllocator = Depends(get_ab_allocator)) -> ABTest:
    try:
        return allocator.start_test(test_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/ab-tests/{test_id}/pause", response_model=ABTest, summary="Pause an A/B test")
def pause_ab_test(test_id: str, allocator: ABAllocator = Depends(get_ab_allocator)) -> ABTest:
    try:
        return allocator.pause_test(test_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/ab-tests/variants/{variant_id}/events", response_model=VariantMetrics,
             summary="Record a delivery event for a variant")
def record_variant_event(
    variant_id: str,
    request: VariantEventRequest,
    allocator: ABAllocator = Depends(get_ab_allocator)
) -> VariantMetrics:
    try:
        return allocator.record_event(variant_id, request.kind)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.get("/ab-tests/{test_id}/significance", response_model=SignificanceResult,
            summary="Significance of the best challenger against the control")
def get_significance(test_id: str, allocator: ABAllocator = Depends(get_ab_allocator)) -> SignificanceResult:
    try:
        return allocator.calculate_significance(test_id)
    except JourneyEngineError as e:
        raise _http_error(e)


@router.post("/ab-tests/{test_id}/winner", response_model=ABTest,
             summary="Declare a winner and deploy it onto the step")
def declare_winner(
    test_id: str,
    request: DeclareWinnerRequest,
    allocator: ABAllocator = Depends(get_ab_allocator)
) -> ABTest:
    try:
        return allocator.declare_winner(test_id, request.variant_id)
    except JourneyEngineError as e:
        raise _http_error(e)

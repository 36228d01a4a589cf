"""Execution engine: drives one contact at a time through a workflow graph."""

import time
import uuid
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import AppConfig, get_config
from ..executors.base import ExecutionContext, ExecutorServices, NodeExecutorRegistry, NodeOutcome
from ..models.core import (
    Execution,
    ExecutionLogEntry,
    ExecutionStatusEnum,
    LogEventType,
    TriggerResult,
    WakeCondition,
    WakeKind,
    WorkflowStatus,
)
from .clock import utcnow
from .collaborators import ContactDirectory, InMemoryContactDirectory, WakeScheduler
from .error_recovery import RetryConfig
from .exceptions import (
    ExecutionEngineError,
    ExecutionLockedError,
    FatalExecutionError,
    GraphValidationError,
    JourneyEngineError,
    LogicExecutorError,
    StorageError,
    TransientExecutorError,
)
from .graph import GraphModel
from .graph_manager import GraphManager
from .logging import ErrorRecoveryLogger, clear_logging_context, get_logger, set_logging_context
from .state_manager import ExecutionStore
from .triggers import trigger_matches

logger = get_logger(__name__)


@dataclass
class _Run:
    """State of one leased advance call."""
    execution: Execution
    graph: GraphModel
    lease_owner: str
    contact: Optional[Dict[str, Any]] = None


class ExecutionEngine:
    """
    Runs executions against their workflow graphs.

    Every mutation of an execution happens inside a lease taken from the
    ExecutionStore, so two workers can never advance the same execution at
    once. Within a lease the engine runs nodes back to back until the
    execution suspends, completes, fails or is cancelled.
    """

    def __init__(
        self,
        graph_manager: GraphManager,
        store: ExecutionStore,
        registry: NodeExecutorRegistry,
        services: ExecutorServices,
        contacts: Optional[ContactDirectory] = None,
        scheduler: Optional[WakeScheduler] = None,
        config: Optional[AppConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the execution engine.

        Args:
            graph_manager: Source of workflow definitions and graphs
            store: Persistence for executions, leases, holds and logs
            registry: Node executors, one per node type
            services: Collaborators handed to executors
            contacts: Contact lookup used to build each node's context
            scheduler: Optional scheduler notified whenever an execution suspends
            config: Engine limits; defaults to the global configuration
            clock: Source of naive-UTC "now"
        """
        config = config or get_config()
        self.graph_manager = graph_manager
        self.store = store
        self.registry = registry
        self.services = services
        self.contacts = contacts or InMemoryContactDirectory()
        self.scheduler = scheduler
        self._clock = clock

        self._max_retries = config.max_retries
        self._lease_ttl = config.lease_ttl
        self._max_steps = config.max_steps_per_advance
        self._backoff = RetryConfig.for_node_failures(config)
        self._recovery_logger = ErrorRecoveryLogger("execution_engine")

        self._instance_id = uuid.uuid4().hex[:12]
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_executions,
            thread_name_prefix="journey-engine",
        )
        # workflow id -> ((version, updated_at), is_valid); only the latest revision is kept
        self._validity: Dict[str, Tuple[Tuple[int, Optional[datetime]], bool]] = {}
        self._validity_lock = threading.Lock()

        logger.info(
            f"ExecutionEngine initialized with max_concurrent_executions="
            f"{config.max_concurrent_executions}"
        )

    # -- public operations -------------------------------------------------

    def start_execution(
        self,
        workflow_id: str,
        contact_id: str,
        organization_id: Optional[str] = None,
        trigger_payload: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """
        Start a workflow for a contact and run it until it first suspends or ends.

        Raises:
            NotFoundError: If the workflow does not exist
            GraphValidationError: If the workflow graph has blocking errors
            ExecutionEngineError: If the workflow is not active or the contact may not enter it
        """
        graph = self.graph_manager.get_graph(workflow_id)
        workflow = graph.workflow
        if workflow.status != WorkflowStatus.ACTIVE:
            raise ExecutionEngineError(
                f"Workflow {workflow_id} is {workflow.status.value}, not active",
                workflow_id=workflow_id
            )
        self._require_valid(graph)
        self._check_entry(graph, contact_id)

        now = self._clock()
        trigger = graph.trigger()
        context: Dict[str, Any] = {}
        if trigger_payload:
            context["trigger"] = trigger_payload

        execution = self.store.create_execution(Execution(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            contact_id=contact_id,
            organization_id=organization_id or workflow.organization_id,
            status=ExecutionStatusEnum.PENDING,
            current_node_id=trigger.id,
            execution_path=[trigger.id],
            context=context,
            created_at=now,
        ), exclusive=not graph.settings.allow_reentry)
        logger.info(f"Started execution {execution.id} of workflow {workflow_id} for contact {contact_id}")
        return self._with_lease(execution.id, self._begin)

    def resume(self, execution_id: str) -> Execution:
        """
        Continue a waiting execution whose wake condition is satisfied.

        Already resumed or terminal executions are returned unchanged.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            ExecutionEngineError: If the execution is waiting and not yet due
            ExecutionLockedError: If another worker holds the lease
        """
        execution = self.store.get_execution(execution_id)
        if execution.status != ExecutionStatusEnum.WAITING:
            return execution
        now = self._clock()
        self._require_due(execution, now)
        return self._with_lease(execution_id, lambda run: self._resume_locked(run, now))

    def cancel(self, execution_id: str) -> Execution:
        """
        Cancel a non-terminal execution.

        An execution nobody is advancing is cancelled at once; one currently
        being advanced is cancelled by its lease holder before the next step.
        """
        execution = self.store.request_cancel(execution_id)
        if execution.is_terminal:
            return execution
        try:
            return self._with_lease(execution_id, self._cancel_if_live)
        except ExecutionLockedError:
            logger.info(f"Execution {execution_id} is busy; cancellation will apply before its next step")
            return self.store.get_execution(execution_id)

    def on_external_event(
        self,
        contact_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[Execution]:
        """Deliver a contact event to every execution waiting for it and resume them."""
        resumed = []
        for waiting in self.store.find_waiting_for_event(contact_id, event_type):
            try:
                resumed.append(self._with_lease(
                    waiting.id,
                    lambda run: self._deliver_event(run, event_type, payload or {})
                ))
            except ExecutionLockedError:
                logger.warning(f"Execution {waiting.id} is busy; event {event_type} not delivered now")
        logger.info(f"Event {event_type} for contact {contact_id} resumed {len(resumed)} execution(s)")
        return resumed

    def on_trigger_event(
        self,
        organization_id: str,
        contact_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[TriggerResult]:
        """
        Start every active workflow of an organization whose trigger matches the event.

        A workflow that refuses the contact (already active, re-entry hold,
        entry limit, invalid graph) is reported in the results rather than raised.
        """
        data = data or {}
        results = []
        for summary in self.graph_manager.list_workflows(organization_id):
            if summary.status != WorkflowStatus.ACTIVE:
                continue
            graph = self.graph_manager.get_graph(summary.id)
            trigger = graph.trigger()
            if trigger is None:
                continue
            matched, reason = trigger_matches(trigger.data, event_type, data)
            if not matched:
                results.append(TriggerResult(workflow_id=summary.id, triggered=False, reason=reason))
                continue
            try:
                execution = self.start_execution(
                    summary.id, contact_id, organization_id,
                    trigger_payload={"event_type": event_type, "data": data},
                )
            except (ExecutionEngineError, GraphValidationError) as e:
                logger.info(f"Trigger {event_type} did not start workflow {summary.id}: {e.message}")
                results.append(TriggerResult(workflow_id=summary.id, triggered=False, reason=e.message))
                continue
            results.append(TriggerResult(workflow_id=summary.id, triggered=True, execution=execution))

        started = sum(1 for r in results if r.triggered)
        logger.info(f"Trigger {event_type} for contact {contact_id} started {started} workflow(s)")
        return results

    def process_due_wakeups(self, now: Optional[datetime] = None, limit: int = 500) -> List[Execution]:
        """Resume every waiting execution whose wake time or event timeout has passed."""
        now = now or self._clock()
        resumed = []
        for due in self.store.find_due(now, limit):
            try:
                resumed.append(self._with_lease(due.id, lambda run: self._resume_locked(run, now)))
            except ExecutionLockedError:
                logger.debug(f"Skipping due execution {due.id}: lease held elsewhere")
            except JourneyEngineError as e:
                logger.error(f"Failed to resume execution {due.id}: {e.message}")
        if resumed:
            logger.info(f"Wake sweep resumed {len(resumed)} execution(s)")
        return resumed

    def submit_start(self, workflow_id: str, contact_id: str, organization_id: Optional[str] = None,
                     trigger_payload: Optional[Dict[str, Any]] = None) -> Future:
        return self._executor.submit(
            self.start_execution, workflow_id, contact_id, organization_id, trigger_payload
        )

    def submit_resume(self, execution_id: str) -> Future:
        return self._executor.submit(self.resume, execution_id)

    def get_execution(self, execution_id: str) -> Execution:
        return self.store.get_execution(execution_id)

    def get_execution_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        return self.store.get_logs(execution_id)

    def clear_reentry_hold(self, workflow_id: str, contact_id: str) -> bool:
        """Allow a contact blocked by a failed stop-on-error execution to enter again."""
        return self.store.clear_hold(workflow_id, contact_id)

    def shutdown(self) -> None:
        """Wait for submitted work and release the worker pool."""
        try:
            self._executor.shutdown(wait=True)
            logger.info("ExecutionEngine shutdown completed")
        except RuntimeError as e:
            logger.error(f"Error during ExecutionEngine shutdown: {str(e)}")

    # -- entry checks ------------------------------------------------------

    def _require_valid(self, graph: GraphModel) -> None:
        workflow = graph.workflow
        revision = (workflow.version, workflow.updated_at)
        with self._validity_lock:
            cached = self._validity.get(workflow.id)
        valid = cached[1] if cached is not None and cached[0] == revision else None
        if valid is None:
            result = self.graph_manager.validate_workflow(workflow)
            valid = result.is_valid
            with self._validity_lock:
                self._validity[workflow.id] = (revision, valid)
            if not valid:
                raise GraphValidationError(
                    f"Workflow {workflow.id} has validation errors",
                    validation_errors=[issue.message for issue in result.blocking],
                    workflow_id=workflow.id
                )
        elif not valid:
            raise GraphValidationError(
                f"Workflow {workflow.id} has validation errors", workflow_id=workflow.id
            )

    def _check_entry(self, graph: GraphModel, contact_id: str) -> None:
        workflow_id = graph.workflow_id
        settings = graph.settings

        if self.store.has_hold(workflow_id, contact_id):
            raise ExecutionEngineError(
                f"Contact {contact_id} is held out of workflow {workflow_id} after a failure",
                workflow_id=workflow_id
            )
        if not settings.allow_reentry and self.store.find_active(workflow_id, contact_id):
            raise ExecutionEngineError(
                f"Contact {contact_id} already has an active execution of workflow {workflow_id}",
                workflow_id=workflow_id
            )
        if settings.max_executions_per_contact is not None:
            count = self.store.count_for_contact(workflow_id, contact_id)
            if count >= settings.max_executions_per_contact:
                raise ExecutionEngineError(
                    f"Contact {contact_id} reached the limit of "
                    f"{settings.max_executions_per_contact} executions",
                    workflow_id=workflow_id
                )

    @staticmethod
    def _require_due(execution: Execution, now: datetime) -> None:
        wake = execution.wake_condition
        if wake is not None and not wake.is_satisfied(now):
            raise ExecutionEngineError(
                f"Execution {execution.id} is waiting until "
                f"{wake.due_at.isoformat() if wake.due_at else 'an event'}",
                execution_id=execution.id
            )

    # -- leased operations -------------------------------------------------

    def _with_lease(self, execution_id: str, operation: Callable[[_Run], Execution]) -> Execution:
        owner = f"{self._instance_id}:{uuid.uuid4().hex[:8]}"
        execution = self.store.acquire_lease(execution_id, owner, self._lease_ttl, self._clock())
        set_logging_context(execution_id=execution_id, workflow_id=execution.workflow_id)
        try:
            graph = self.graph_manager.get_graph(execution.workflow_id)
            return operation(_Run(execution=execution, graph=graph, lease_owner=owner))
        finally:
            self.store.release_lease(execution_id, owner)
            clear_logging_context()

    def _begin(self, run: _Run) -> Execution:
        execution = run.execution
        if execution.status != ExecutionStatusEnum.PENDING:
            return execution
        execution.status = ExecutionStatusEnum.RUNNING
        execution.started_at = self._clock()
        return self._advance(run)

    def _resume_locked(self, run: _Run, now: datetime) -> Execution:
        execution = run.execution
        if execution.status != ExecutionStatusEnum.WAITING:
            return execution
        self._require_due(execution, now)

        wake = execution.wake_condition
        execution.status = ExecutionStatusEnum.RUNNING
        execution.wake_condition = None
        if wake is None or wake.kind == WakeKind.RETRY:
            return self._advance(run)

        node = run.graph.get_node(execution.current_node_id)
        if node is None:
            return self._fail(run, execution.current_node_id, LogicExecutorError(
                f"Node {execution.current_node_id} no longer exists in the workflow",
                node_id=execution.current_node_id
            ))
        outcome = self.registry.get(node.type).on_resume(node, self._context(run), wake)
        self._log(run, node.id, node.type, LogEventType.COMPLETED, output=outcome.output)
        return self._advance(run, pending=outcome)

    def _deliver_event(self, run: _Run, event_type: str, payload: Dict[str, Any]) -> Execution:
        execution = run.execution
        wake = execution.wake_condition
        if (
            execution.status != ExecutionStatusEnum.WAITING
            or wake is None
            or wake.kind != WakeKind.EVENT
            or wake.event_type != event_type
        ):
            return execution

        now = self._clock()
        if not wake.timed_out(now):
            wake.event_received = True
            execution.context[f"event_{wake.node_id}"] = payload
        return self._resume_locked(run, now)

    def _cancel_if_live(self, run: _Run) -> Execution:
        if run.execution.is_terminal:
            return run.execution
        return self._finish(run, ExecutionStatusEnum.CANCELLED)

    # -- the advance loop --------------------------------------------------

    def _advance(self, run: _Run, pending: Optional[NodeOutcome] = None) -> Execution:
        """Run nodes until the execution suspends or ends."""
        steps = 0
        while True:
            execution = run.execution
            fresh = self.store.acquire_lease(execution.id, run.lease_owner, self._lease_ttl, self._clock())
            if fresh.cancel_requested:
                logger.info(f"Execution {execution.id} cancelled before node {execution.current_node_id}")
                return self._finish(run, ExecutionStatusEnum.CANCELLED)

            node = run.graph.get_node(execution.current_node_id)
            if node is None:
                return self._fail(run, execution.current_node_id, LogicExecutorError(
                    f"Node {execution.current_node_id} no longer exists in the workflow",
                    node_id=execution.current_node_id
                ))

            if pending is not None:
                outcome, pending = pending, None
            else:
                if steps >= self._max_steps:
                    return self._fail(run, node.id, FatalExecutionError(
                        f"Execution exceeded {self._max_steps} steps in one advance",
                        retry_count=execution.retry_count, node_id=node.id
                    ))
                steps += 1
                try:
                    outcome = self._execute_node(run, node)
                except TransientExecutorError as e:
                    return self._retry_or_fail(run, node.id, e)
                except JourneyEngineError as e:
                    return self._fail(run, node.id, e)

            execution.context.update(outcome.context_updates)
            execution.retry_count = 0
            execution.error_message = None

            if outcome.suspend is not None:
                return self._suspend(run, outcome.suspend)

            next_id = None if outcome.terminal else run.graph.successor(node.id, outcome.next_handle)
            if next_id is None:
                return self._finish(run, ExecutionStatusEnum.COMPLETED)

            execution.current_node_id = next_id
            execution.execution_path.append(next_id)
            run.execution = self._save(run)

    def _execute_node(self, run: _Run, node) -> NodeOutcome:
        executor = self.registry.get(node.type)
        self._log(run, node.id, node.type, LogEventType.STARTED,
                  input_data={"attempt": run.execution.retry_count + 1})
        started = time.monotonic()
        try:
            outcome = executor.execute(node, self._context(run))
        except JourneyEngineError as e:
            self._log(run, node.id, node.type, LogEventType.FAILED,
                      error_message=e.message, started=started)
            raise
        except Exception as e:
            self._log(run, node.id, node.type, LogEventType.FAILED,
                      error_message=str(e), started=started)
            raise FatalExecutionError(
                f"Unexpected error in {node.type} node {node.id}: {str(e)}",
                retry_count=run.execution.retry_count, cause=e, node_id=node.id
            ) from e

        self._log(run, node.id, node.type, LogEventType.COMPLETED,
                  output=outcome.output, started=started)
        return outcome

    def _context(self, run: _Run) -> ExecutionContext:
        if run.contact is None:
            run.contact = self.contacts.get_contact(run.execution.contact_id)
        return ExecutionContext(
            execution=run.execution,
            graph=run.graph,
            contact=run.contact,
            now=self._clock(),
            services=self.services,
        )

    # -- transitions -------------------------------------------------------

    def _retry_or_fail(self, run: _Run, node_id: str, error: TransientExecutorError) -> Execution:
        execution = run.execution
        settings_retries = run.graph.settings.max_retries
        max_retries = self._max_retries if settings_retries is None else settings_retries
        execution.retry_count += 1

        if execution.retry_count <= max_retries:
            wake_at = self._clock() + self._backoff.backoff(execution.retry_count)
            self._recovery_logger.log_retry_scheduled(
                node_id, error, execution.retry_count, max_retries, wake_at
            )
            execution.error_message = error.message
            return self._suspend(run, WakeCondition(
                kind=WakeKind.RETRY,
                node_id=node_id,
                wake_at=wake_at,
            ))

        self._recovery_logger.log_retries_exhausted(node_id, error, execution.retry_count)
        return self._fail(run, node_id, FatalExecutionError(
            f"Retries exhausted: {error.message}",
            retry_count=execution.retry_count, cause=error, node_id=node_id
        ))

    def _suspend(self, run: _Run, wake: WakeCondition) -> Execution:
        execution = run.execution
        execution.status = ExecutionStatusEnum.WAITING
        execution.wake_condition = wake
        saved = self._save(run)
        logger.info(
            f"Execution {execution.id} waiting at node {wake.node_id} ({wake.kind.value}"
            f"{', until ' + wake.due_at.isoformat() if wake.due_at else ''})"
        )
        if self.scheduler is not None:
            self.scheduler.schedule_wake(execution.id, wake)
        return saved

    def _fail(self, run: _Run, node_id: Optional[str], error: JourneyEngineError) -> Execution:
        execution = run.execution
        execution.error_message = error.message
        execution.error_node_id = node_id
        if isinstance(error, FatalExecutionError):
            execution.retry_count = max(execution.retry_count, error.retry_count)
        logger.error(f"Execution {execution.id} failed at node {node_id}: {error.message}")

        saved = self._finish(run, ExecutionStatusEnum.FAILED)
        if run.graph.settings.stop_on_error:
            self.store.place_hold(
                execution.workflow_id, execution.contact_id, execution.id, reason=error.message
            )
        return saved

    def _finish(self, run: _Run, status: ExecutionStatusEnum) -> Execution:
        execution = run.execution
        execution.status = status
        execution.wake_condition = None
        execution.completed_at = self._clock()
        saved = self._save(run)
        logger.info(f"Execution {execution.id} {status.value}")
        return saved

    def _save(self, run: _Run) -> Execution:
        run.execution = self.store.save_execution(run.execution, lease_owner=run.lease_owner)
        return run.execution

    def _log(self, run: _Run, node_id: str, node_type: str, status: LogEventType,
             input_data: Optional[Dict[str, Any]] = None, output: Optional[Dict[str, Any]] = None,
             error_message: Optional[str] = None, started: Optional[float] = None) -> None:
        """Record a node log entry; a logging failure never affects the execution."""
        try:
            self.store.append_log(ExecutionLogEntry(
                execution_id=run.execution.id,
                node_id=node_id,
                node_type=node_type,
                status=status,
                input_data=input_data,
                output_data=output or None,
                error_message=error_message,
                duration_ms=int((time.monotonic() - started) * 1000) if started is not None else None,
                created_at=self._clock(),
            ))
        except StorageError as e:
            logger.error(f"Failed to record {status.value} log for node {node_id}: {e.message}")

"""Persistence of executions, execution leases, reentry holds and node logs."""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
from pydantic import ValidationError
from sqlalchemy import or_, update, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models.core import (
    Execution,
    ExecutionLogEntry,
    ExecutionStatusEnum,
    TERMINAL_STATUSES,
    WakeKind,
)
from ..storage.database import get_session_factory
from ..storage.models import ExecutionLogModel, ExecutionModel, ReentryHoldModel
from .clock import utcnow
from .error_recovery import STORAGE_RETRY, with_retry
from .exceptions import (
    ExecutionEngineError,
    ExecutionLockedError,
    ExecutionNotFoundError,
    StorageError,
)
from .logging import get_logger

logger = get_logger(__name__)

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class ExecutionStore:
    """
    Stores Execution records and arbitrates the per-execution lease.

    Every read decodes the row through the Execution model; raw rows never
    leave this class. Writes from the engine go through ``save_execution``,
    which only succeeds while the caller still holds the lease.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _get_db_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    @with_retry(STORAGE_RETRY)
    def create_execution(self, execution: Execution, exclusive: bool = False) -> Execution:
        """
        Insert a new execution row.

        With ``exclusive`` the row claims the (workflow, contact) active slot,
        which a unique constraint lets only one live execution hold.

        Raises:
            ExecutionEngineError: If ``exclusive`` and the contact already has a live execution
            StorageError: If the insert fails
        """
        now = utcnow()
        db = self._get_db_session()
        try:
            row = ExecutionModel(
                id=execution.id,
                workflow_id=execution.workflow_id,
                contact_id=execution.contact_id,
                organization_id=execution.organization_id,
                created_at=execution.created_at or now,
            )
            if exclusive and not execution.is_terminal:
                row.active_key = f"{execution.workflow_id}:{execution.contact_id}"
            self._apply(row, execution, now)
            db.add(row)
            db.commit()
            logger.info(f"Created execution {execution.id} for contact {execution.contact_id}")
            return self._to_execution(row)

        except IntegrityError:
            db.rollback()
            raise ExecutionEngineError(
                f"Contact {execution.contact_id} already has an active execution of workflow "
                f"{execution.workflow_id}",
                workflow_id=execution.workflow_id
            )
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to persist execution: {str(e)}", operation="create_execution")
        finally:
            db.close()

    def get_execution(self, execution_id: str) -> Execution:
        """
        Load one execution.

        Raises:
            ExecutionNotFoundError: If no row has this id
        """
        db = self._get_db_session()
        try:
            row = db.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            if not row:
                raise ExecutionNotFoundError(
                    f"Execution {execution_id} not found", execution_id=execution_id
                )
            return self._to_execution(row)

        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution: {str(e)}", operation="get_execution")
        finally:
            db.close()

    def save_execution(self, execution: Execution, lease_owner: Optional[str] = None) -> Execution:
        """
        Persist the mutable fields of an execution.

        When ``lease_owner`` is given the write only applies while that owner
        still holds the lease. Terminal rows are never rewritten, and the
        execution path may only grow.

        Raises:
            ExecutionLockedError: If the lease was lost
            ExecutionEngineError: If the write would violate an execution invariant
        """
        now = utcnow()
        db = self._get_db_session()
        try:
            row = db.query(ExecutionModel).filter(ExecutionModel.id == execution.id).first()
            if not row:
                raise ExecutionNotFoundError(
                    f"Execution {execution.id} not found", execution_id=execution.id
                )
            if lease_owner is not None and row.lease_owner != lease_owner:
                raise ExecutionLockedError(
                    f"Lease on execution {execution.id} is no longer held by {lease_owner}",
                    execution_id=execution.id
                )
            if row.status in _TERMINAL_VALUES:
                raise ExecutionEngineError(
                    f"Execution {execution.id} is {row.status} and can no longer change",
                    execution_id=execution.id
                )
            stored_path = list(row.execution_path or [])
            if execution.execution_path[:len(stored_path)] != stored_path:
                raise ExecutionEngineError(
                    f"Execution path of {execution.id} may only be appended to",
                    execution_id=execution.id
                )

            # a cancel request written since the caller's read must survive
            execution.cancel_requested = execution.cancel_requested or bool(row.cancel_requested)
            self._apply(row, execution, now)
            db.commit()
            return self._to_execution(row)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save execution: {str(e)}", operation="save_execution")
        finally:
            db.close()

    def acquire_lease(self, execution_id: str, owner: str, ttl_seconds: int,
                      now: Optional[datetime] = None) -> Execution:
        """
        Claim the exclusive right to advance an execution.

        The claim is a single compare-and-swap UPDATE: it succeeds only if the
        lease is free, expired, or already held by ``owner``.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            ExecutionLockedError: If another owner holds a live lease
        """
        now = now or utcnow()
        db = self._get_db_session()
        try:
            result = db.execute(
                update(ExecutionModel)
                .where(ExecutionModel.id == execution_id)
                .where(or_(
                    ExecutionModel.lease_owner.is_(None),
                    ExecutionModel.lease_expires_at < now,
                    ExecutionModel.lease_owner == owner,
                ))
                .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if result.rowcount != 1:
                exists = db.query(ExecutionModel.id).filter(ExecutionModel.id == execution_id).first()
                if not exists:
                    raise ExecutionNotFoundError(
                        f"Execution {execution_id} not found", execution_id=execution_id
                    )
                raise ExecutionLockedError(
                    f"Execution {execution_id} is being advanced by another worker",
                    execution_id=execution_id
                )

            logger.debug(f"Lease on execution {execution_id} acquired by {owner}")
            row = db.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            return self._to_execution(row)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to acquire lease: {str(e)}", operation="acquire_lease")
        finally:
            db.close()

    def release_lease(self, execution_id: str, owner: str) -> None:
        """Release a lease held by ``owner``; a lease held by someone else is left alone."""
        db = self._get_db_session()
        try:
            db.execute(
                update(ExecutionModel)
                .where(ExecutionModel.id == execution_id)
                .where(ExecutionModel.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            logger.debug(f"Lease on execution {execution_id} released by {owner}")

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to release lease: {str(e)}", operation="release_lease")
        finally:
            db.close()

    def request_cancel(self, execution_id: str) -> Execution:
        """Flag a non-terminal execution for cancellation."""
        db = self._get_db_session()
        try:
            row = db.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            if not row:
                raise ExecutionNotFoundError(
                    f"Execution {execution_id} not found", execution_id=execution_id
                )
            if row.status not in _TERMINAL_VALUES:
                row.cancel_requested = True
                row.updated_at = utcnow()
                db.commit()
            return self._to_execution(row)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to request cancel: {str(e)}", operation="request_cancel")
        finally:
            db.close()

    def find_active(self, workflow_id: str, contact_id: str) -> List[Execution]:
        """Non-terminal executions of a workflow for one contact."""
        return self._query(
            lambda q: q.filter(
                ExecutionModel.workflow_id == workflow_id,
                ExecutionModel.contact_id == contact_id,
                ExecutionModel.status.notin_(_TERMINAL_VALUES),
            )
        )

    def count_for_contact(self, workflow_id: str, contact_id: str) -> int:
        db = self._get_db_session()
        try:
            return db.query(func.count(ExecutionModel.id)).filter(
                ExecutionModel.workflow_id == workflow_id,
                ExecutionModel.contact_id == contact_id,
            ).scalar() or 0
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count executions: {str(e)}", operation="count_for_contact")
        finally:
            db.close()

    def find_waiting_for_event(self, contact_id: str, event_type: str) -> List[Execution]:
        """Waiting executions of a contact whose wake condition is this event."""
        candidates = self._query(
            lambda q: q.filter(
                ExecutionModel.contact_id == contact_id,
                ExecutionModel.status == ExecutionStatusEnum.WAITING.value,
            )
        )
        return [
            execution for execution in candidates
            if execution.wake_condition is not None
            and execution.wake_condition.kind == WakeKind.EVENT
            and execution.wake_condition.event_type == event_type
        ]

    def find_due(self, now: datetime, limit: int = 500) -> List[Execution]:
        """Waiting executions whose wake time or event timeout has passed."""
        return self._query(
            lambda q: q.filter(
                ExecutionModel.status == ExecutionStatusEnum.WAITING.value,
                ExecutionModel.next_wake_at.isnot(None),
                ExecutionModel.next_wake_at <= now,
            ).order_by(ExecutionModel.next_wake_at).limit(limit)
        )

    def list_executions(self, workflow_id: str, since: Optional[datetime] = None,
                        until: Optional[datetime] = None) -> List[Execution]:
        """Bulk load executions of a workflow created in [since, until]."""
        def build(q):
            q = q.filter(ExecutionModel.workflow_id == workflow_id)
            if since is not None:
                q = q.filter(ExecutionModel.created_at >= since)
            if until is not None:
                q = q.filter(ExecutionModel.created_at <= until)
            return q.order_by(ExecutionModel.created_at)
        return self._query(build)

    def place_hold(self, workflow_id: str, contact_id: str, execution_id: str,
                   reason: Optional[str] = None) -> None:
        """Block new executions of a workflow for a contact."""
        db = self._get_db_session()
        try:
            existing = db.get(ReentryHoldModel, (workflow_id, contact_id))
            if existing:
                existing.execution_id = execution_id
                existing.reason = reason
            else:
                db.add(ReentryHoldModel(
                    workflow_id=workflow_id,
                    contact_id=contact_id,
                    execution_id=execution_id,
                    reason=reason,
                ))
            db.commit()
            logger.warning(
                f"Reentry hold placed on workflow {workflow_id} for contact {contact_id}"
            )

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to place reentry hold: {str(e)}", operation="place_hold")
        finally:
            db.close()

    def has_hold(self, workflow_id: str, contact_id: str) -> bool:
        db = self._get_db_session()
        try:
            return db.get(ReentryHoldModel, (workflow_id, contact_id)) is not None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read reentry hold: {str(e)}", operation="has_hold")
        finally:
            db.close()

    def clear_hold(self, workflow_id: str, contact_id: str) -> bool:
        """Remove a reentry hold. Returns False when there was none."""
        db = self._get_db_session()
        try:
            hold = db.get(ReentryHoldModel, (workflow_id, contact_id))
            if hold is None:
                return False
            db.delete(hold)
            db.commit()
            logger.info(f"Reentry hold cleared on workflow {workflow_id} for contact {contact_id}")
            return True

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to clear reentry hold: {str(e)}", operation="clear_hold")
        finally:
            db.close()

    @with_retry(STORAGE_RETRY)
    def append_log(self, entry: ExecutionLogEntry) -> None:
        """Record one node log entry."""
        db = self._get_db_session()
        try:
            db.add(ExecutionLogModel(
                execution_id=entry.execution_id,
                node_id=entry.node_id,
                node_type=entry.node_type,
                status=entry.status.value,
                input_data=entry.input_data,
                output_data=entry.output_data,
                error_message=entry.error_message,
                duration_ms=entry.duration_ms,
                created_at=entry.created_at or utcnow(),
            ))
            db.commit()

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to write execution log: {str(e)}", operation="append_log")
        finally:
            db.close()

    def get_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        db = self._get_db_session()
        try:
            rows = (
                db.query(ExecutionLogModel)
                .filter(ExecutionLogModel.execution_id == execution_id)
                .order_by(ExecutionLogModel.id)
                .all()
            )
            return [
                ExecutionLogEntry.model_validate({
                    "id": row.id,
                    "execution_id": row.execution_id,
                    "node_id": row.node_id,
                    "node_type": row.node_type,
                    "status": row.status,
                    "input_data": row.input_data,
                    "output_data": row.output_data,
                    "error_message": row.error_message,
                    "duration_ms": row.duration_ms,
                    "created_at": row.created_at,
                })
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read execution logs: {str(e)}", operation="get_logs")
        finally:
            db.close()

    def _query(self, build) -> List[Execution]:
        db = self._get_db_session()
        try:
            rows = build(db.query(ExecutionModel)).all()
            return [self._to_execution(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query executions: {str(e)}", operation="query_executions")
        finally:
            db.close()

    @staticmethod
    def _apply(row: ExecutionModel, execution: Execution, now: datetime) -> None:
        wake = execution.wake_condition
        row.status = execution.status.value
        row.current_node_id = execution.current_node_id
        row.execution_path = list(execution.execution_path)
        row.context = execution.model_dump(mode="json")["context"]
        row.error_message = execution.error_message
        row.error_node_id = execution.error_node_id
        row.retry_count = execution.retry_count
        row.wake_condition = wake.model_dump(mode="json") if wake else None
        row.next_wake_at = (
            wake.due_at if wake is not None and execution.status == ExecutionStatusEnum.WAITING else None
        )
        row.cancel_requested = execution.cancel_requested
        if execution.is_terminal:
            row.active_key = None
        row.started_at = execution.started_at
        row.completed_at = execution.completed_at
        row.updated_at = now

    @staticmethod
    def _to_execution(row: ExecutionModel) -> Execution:
        try:
            return Execution.model_validate({
                "id": row.id,
                "workflow_id": row.workflow_id,
                "contact_id": row.contact_id,
                "organization_id": row.organization_id,
                "status": row.status,
                "current_node_id": row.current_node_id,
                "execution_path": row.execution_path or [],
                "context": row.context or {},
                "error_message": row.error_message,
                "error_node_id": row.error_node_id,
                "retry_count": row.retry_count or 0,
                "wake_condition": row.wake_condition,
                "cancel_requested": bool(row.cancel_requested),
                "started_at": row.started_at,
                "completed_at": row.completed_at,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
            })
        except ValidationError as e:
            raise StorageError(
                f"Stored execution '{row.id}' failed to decode: {e.error_count()} error(s)",
                operation="decode_execution"
            )

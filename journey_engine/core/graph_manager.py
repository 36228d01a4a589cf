"""Graph Manager for workflow definition storage, activation and export."""

import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    ValidationResult,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowSummary,
)
from ..storage.database import get_session_factory
from ..storage.models import WorkflowModel
from .clock import utcnow
from .exceptions import GraphValidationError, NotFoundError, StorageError
from .graph import GraphModel
from .graph_validator import GraphValidator
from .logging import get_logger

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0"


class GraphManager:
    """Manages workflow definitions, validation, activation and storage."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        validator: Optional[GraphValidator] = None
    ):
        """Initialize GraphManager with an optional session factory."""
        self._session_factory = session_factory
        self.validator = validator or GraphValidator()
        self._graph_cache: Dict[Tuple[str, int], GraphModel] = {}
        self._cache_lock = threading.Lock()

    def _get_db_session(self) -> Session:
        """Open a new database session."""
        factory = self._session_factory or get_session_factory()
        return factory()

    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """
        Store a new workflow definition.

        Drafts are stored even when invalid; activation is where validation
        is enforced.

        Args:
            workflow: The workflow definition to store

        Returns:
            WorkflowDefinition: The stored definition with timestamps

        Raises:
            GraphValidationError: If an active workflow fails validation or the id is taken
            StorageError: If storage operation fails
        """
        logger.info(f"Creating workflow '{workflow.name}' ({workflow.id})")

        if workflow.status == WorkflowStatus.ACTIVE:
            self._require_valid(workflow)

        now = utcnow()
        workflow = workflow.model_copy(update={"created_at": now, "updated_at": now})

        db = self._get_db_session()
        try:
            if db.query(WorkflowModel).filter(WorkflowModel.id == workflow.id).first():
                raise GraphValidationError(
                    f"Workflow with ID '{workflow.id}' already exists", workflow_id=workflow.id
                )

            db.add(WorkflowModel(
                id=workflow.id,
                organization_id=workflow.organization_id,
                name=workflow.name,
                description=workflow.description,
                status=workflow.status.value,
                version=workflow.version,
                definition=self._definition_payload(workflow),
                created_at=now,
                updated_at=now,
            ))
            db.commit()

            logger.info(f"Successfully created workflow '{workflow.name}' with ID: {workflow.id}")
            return workflow

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create_workflow")
        finally:
            db.close()

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Retrieve a workflow definition by its ID.

        Raises:
            NotFoundError: If the workflow does not exist
            StorageError: If the stored definition is corrupt or storage fails
        """
        logger.debug(f"Retrieving workflow with ID: {workflow_id}")

        db = self._get_db_session()
        try:
            row = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if not row:
                raise NotFoundError(
                    f"Workflow with ID '{workflow_id}' not found",
                    operation="get_workflow", table="workflows"
                )
            return self._to_definition(row)

        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_workflow")
        finally:
            db.close()

    def get_graph(self, workflow_id: str) -> GraphModel:
        """Return the GraphModel for the current version of a workflow."""
        workflow = self.get_workflow(workflow_id)
        key = (workflow.id, workflow.version)
        with self._cache_lock:
            graph = self._graph_cache.get(key)
            if graph is None or graph.workflow.updated_at != workflow.updated_at:
                graph = GraphModel(workflow)
                self._graph_cache[key] = graph
            return graph

    def list_workflows(self, organization_id: Optional[str] = None) -> List[WorkflowSummary]:
        """List stored workflows, newest first."""
        db = self._get_db_session()
        try:
            query = db.query(WorkflowModel)
            if organization_id:
                query = query.filter(WorkflowModel.organization_id == organization_id)
            rows = query.order_by(WorkflowModel.created_at.desc()).all()

            return [
                WorkflowSummary(
                    id=row.id,
                    name=row.name,
                    status=WorkflowStatus(row.status),
                    version=row.version,
                    node_count=len((row.definition or {}).get("nodes", [])),
                    updated_at=row.updated_at,
                )
                for row in rows
            ]

        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows")
        finally:
            db.close()

    def update_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """
        Replace the graph of an existing workflow, bumping its version.

        Raises:
            NotFoundError: If the workflow does not exist
            GraphValidationError: If the workflow is active and the new graph is invalid
        """
        if workflow.status == WorkflowStatus.ACTIVE:
            self._require_valid(workflow)

        db = self._get_db_session()
        try:
            row = db.query(WorkflowModel).filter(WorkflowModel.id == workflow.id).first()
            if not row:
                raise NotFoundError(
                    f"Workflow with ID '{workflow.id}' not found", operation="update_workflow"
                )

            now = utcnow()
            row.name = workflow.name
            row.description = workflow.description
            row.organization_id = workflow.organization_id
            row.status = workflow.status.value
            row.version = row.version + 1
            row.definition = self._definition_payload(workflow)
            row.updated_at = now
            db.commit()

            logger.info(f"Updated workflow {workflow.id} to version {row.version}")
            return self._to_definition(row)

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while updating workflow: {str(e)}")
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="update_workflow")
        finally:
            db.close()

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow by its ID.

        Returns:
            bool: True if the workflow was deleted, False if not found
        """
        logger.info(f"Deleting workflow with ID: {workflow_id}")

        db = self._get_db_session()
        try:
            row = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if not row:
                logger.warning(f"Workflow with ID '{workflow_id}' not found for deletion")
                return False

            db.delete(row)
            db.commit()
            return True

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete_workflow")
        finally:
            db.close()

    def validate_workflow(self, workflow: WorkflowDefinition) -> ValidationResult:
        """Validate a workflow definition without storing it."""
        result = self.validator.validate(workflow)
        logger.debug(
            f"Workflow validation completed. Valid: {result.is_valid}, "
            f"Errors: {len(result.blocking)}, Warnings: {len(result.warnings)}"
        )
        return result

    def set_status(self, workflow_id: str, status: WorkflowStatus) -> WorkflowDefinition:
        """
        Change a workflow's lifecycle status.

        Activating validates the graph first; any error-severity issue blocks it.
        """
        workflow = self.get_workflow(workflow_id)
        if status == WorkflowStatus.ACTIVE:
            self._require_valid(workflow)

        db = self._get_db_session()
        try:
            row = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            row.status = status.value
            row.updated_at = utcnow()
            db.commit()
            logger.info(f"Workflow {workflow_id} is now {status.value}")
            return self._to_definition(row)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update workflow status: {str(e)}", operation="set_status")
        finally:
            db.close()

    def activate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.set_status(workflow_id, WorkflowStatus.ACTIVE)

    def update_node_data(self, workflow_id: str, node_id: str, updates: Dict[str, Any]) -> WorkflowDefinition:
        """
        Merge ``updates`` into one node's configuration and bump the version.

        Used when an A/B test winner is deployed onto its live step.
        """
        workflow = self.get_workflow(workflow_id)
        nodes = []
        found = False
        for node in workflow.nodes:
            if node.id == node_id:
                found = True
                data = node.data.model_copy(update=updates)
                node = node.model_copy(update={"data": data})
            nodes.append(node)
        if not found:
            raise NotFoundError(
                f"Node '{node_id}' not found in workflow '{workflow_id}'",
                operation="update_node_data"
            )

        updated = workflow.model_copy(update={"nodes": nodes})
        return self.update_workflow(updated)

    def export_workflow(self, workflow_id: str, exported_by: Optional[str] = None) -> Dict[str, Any]:
        """Export a workflow in the portable ``{"version": "1.0", ...}`` format."""
        workflow = self.get_workflow(workflow_id)
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": utcnow().isoformat(),
            "workflow": workflow.model_dump(mode="json"),
            "metadata": {
                "exported_by": exported_by,
                "organization_id": workflow.organization_id,
                "node_count": len(workflow.nodes),
                "edge_count": len(workflow.edges),
            },
        }

    def import_workflow(
        self,
        payload: Dict[str, Any],
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None
    ) -> WorkflowDefinition:
        """
        Import an exported workflow as a new draft.

        Nodes and edges are kept exactly; the workflow gets a fresh id unless one
        is supplied, version 1 and draft status.

        Raises:
            GraphValidationError: If the payload is not a supported export
        """
        if payload.get("version") != EXPORT_FORMAT_VERSION:
            raise GraphValidationError(
                f"Unsupported export version: {payload.get('version')!r}"
            )
        source = payload.get("workflow")
        if not isinstance(source, dict):
            raise GraphValidationError("Export payload has no workflow object")

        data = dict(source)
        data.update({
            "id": workflow_id or self._generate_unique_id(),
            "version": 1,
            "status": WorkflowStatus.DRAFT.value,
            "created_at": None,
            "updated_at": None,
        })
        if organization_id:
            data["organization_id"] = organization_id

        try:
            workflow = WorkflowDefinition.model_validate(data)
        except ValidationError as e:
            raise GraphValidationError(
                "Imported workflow is malformed",
                validation_errors=[err["msg"] for err in e.errors()]
            )

        logger.info(f"Importing workflow '{workflow.name}' as {workflow.id}")
        return self.create_workflow(workflow)

    def _require_valid(self, workflow: WorkflowDefinition) -> None:
        result = self.validate_workflow(workflow)
        if not result.is_valid:
            messages = [issue.message for issue in result.blocking]
            error_msg = f"Workflow validation failed: {'; '.join(messages)}"
            logger.error(error_msg)
            raise GraphValidationError(error_msg, validation_errors=messages, workflow_id=workflow.id)
        if result.warnings:
            logger.warning(
                f"Workflow validation warnings: {'; '.join(w.message for w in result.warnings)}"
            )

    @staticmethod
    def _definition_payload(workflow: WorkflowDefinition) -> Dict[str, Any]:
        dumped = workflow.model_dump(mode="json")
        return {key: dumped[key] for key in ("nodes", "edges", "settings")}

    @staticmethod
    def _to_definition(row: WorkflowModel) -> WorkflowDefinition:
        try:
            return WorkflowDefinition.model_validate({
                "id": row.id,
                "organization_id": row.organization_id,
                "name": row.name,
                "description": row.description or "",
                "status": row.status,
                "version": row.version,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                **(row.definition or {}),
            })
        except ValidationError as e:
            raise StorageError(
                f"Stored workflow '{row.id}' failed to decode: {e.error_count()} error(s)",
                operation="decode_workflow"
            )

    @staticmethod
    def _generate_unique_id() -> str:
        """Generate a unique identifier for a workflow."""
        return str(uuid.uuid4())


"""SQLAlchemy database models for the journey engine."""

from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, Float, Boolean, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from ..core.clock import utcnow
from .database import Base


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    organization_id = Column(String, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")
    version = Column(Integer, nullable=False, default=1)
    definition = Column(JSON, nullable=False)  # nodes, edges and settings
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    executions = relationship("ExecutionModel", back_populates="workflow")


class ExecutionModel(Base):
    """Database model for per-contact workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    contact_id = Column(String, nullable=False)
    organization_id = Column(String)
    status = Column(String, nullable=False)  # pending, running, waiting, completed, failed, cancelled
    current_node_id = Column(String)
    execution_path = Column(JSON, nullable=False, default=list)
    context = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text)
    error_node_id = Column(String)
    retry_count = Column(Integer, nullable=False, default=0)
    wake_condition = Column(JSON)
    next_wake_at = Column(DateTime, index=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    # "workflow_id:contact_id" while a non-reentrant execution is live, NULL otherwise
    active_key = Column(String, unique=True)
    lease_owner = Column(String)
    lease_expires_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    workflow = relationship("WorkflowModel", back_populates="executions")
    logs = relationship("ExecutionLogModel", back_populates="execution")

    __table_args__ = (
        Index("ix_executions_workflow_contact", "workflow_id", "contact_id"),
        Index("ix_executions_status", "status"),
    )


class ExecutionLogModel(Base):
    """Database model for per-node execution log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    status = Column(String, nullable=False)  # started, completed, failed, skipped
    input_data = Column(JSON)
    output_data = Column(JSON)
    error_message = Column(Text)
    duration_ms = Column(Integer)
    created_at = Column(DateTime, default=utcnow)

    execution = relationship("ExecutionModel", back_populates="logs")


class ReentryHoldModel(Base):
    """Blocks new executions for a contact after a failure under stop_on_error."""
    __tablename__ = "reentry_holds"

    workflow_id = Column(String, primary_key=True)
    contact_id = Column(String, primary_key=True)
    execution_id = Column(String, nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class ABTestModel(Base):
    """Database model for A/B tests."""
    __tablename__ = "ab_tests"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    step_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="draft")
    winning_metric = Column(String, nullable=False, default="read_rate")
    confidence_threshold = Column(Float, nullable=False, default=0.95)
    min_sample_size = Column(Integer, nullable=False, default=100)
    winner_id = Column(String)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    variants = relationship(
        "ABVariantModel", back_populates="test", order_by="ABVariantModel.id"
    )


class ABVariantModel(Base):
    """Database model for A/B test variants."""
    __tablename__ = "ab_variants"

    id = Column(String, primary_key=True)
    test_id = Column(String, ForeignKey("ab_tests.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    message_content = Column(Text)
    template_id = Column(String)
    template_variables = Column(JSON)
    traffic_allocation = Column(Float, nullable=False)
    branch_id = Column(String)
    is_control = Column(Boolean, nullable=False, default=False)
    is_winner = Column(Boolean, nullable=False, default=False)
    metrics = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)

    test = relationship("ABTestModel", back_populates="variants")

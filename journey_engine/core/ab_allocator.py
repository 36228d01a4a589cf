"""Deterministic A/B variant allocation and winner detection."""

import math
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional, Sequence, TypeVar
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.ab_testing import (
    ABTest,
    ABTestStatus,
    ABVariant,
    MetricEvent,
    SignificanceResult,
    VariantMetrics,
    WinningMetric,
)
from ..models.core import NodeType
from ..storage.database import get_session_factory
from ..storage.models import ABTestModel, ABVariantModel
from .clock import utcnow
from .exceptions import ABTestError, NotFoundError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

ALLOCATION_TOLERANCE = 0.01

_EVENT_COUNTERS = {
    MetricEvent.IMPRESSION: "impressions",
    MetricEvent.DELIVERED: "delivered",
    MetricEvent.READ: "read",
    MetricEvent.REPLIED: "replied",
    MetricEvent.CLICKED: "clicked",
}

T = TypeVar("T")


def hash_contact_id(contact_id: str) -> int:
    """32-bit polynomial rolling hash (h * 31 + code point), wrapped to signed 32 bits."""
    h = 0
    for char in contact_id:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def bucket_for(contact_id: str) -> int:
    """Bucket in [0, 100) for a contact."""
    return abs(hash_contact_id(contact_id)) % 100


def allocate(items: Sequence[T], contact_id: str, weight: Callable[[T], float]) -> Optional[T]:
    """
    Pick the item whose cumulative weight first exceeds the contact's bucket.

    ``items`` must already be in a stable order. Falls back to the first item
    when weights sum to less than the bucket.
    """
    if not items:
        return None
    bucket = bucket_for(contact_id)
    cumulative = 0.0
    for item in items:
        cumulative += weight(item)
        if bucket < cumulative:
            return item
    return items[0]


def select_variant(test: ABTest, contact_id: str) -> Optional[ABVariant]:
    """Deterministic variant for a contact. Variants are walked in id order."""
    variants = sorted(test.variants, key=lambda v: v.id)
    return allocate(variants, contact_id, lambda v: v.traffic_allocation)


def normal_cdf(x: float) -> float:
    """Standard normal CDF via the Abramowitz-Stegun erf approximation."""
    a1 = 0.254829592
    a2 = -0.284496736
    a3 = 1.421413741
    a4 = -1.453152027
    a5 = 1.061405429
    p = 0.3275911

    sign = -1 if x < 0 else 1
    x = abs(x) / math.sqrt(2)

    t = 1.0 / (1.0 + p * x)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)

    return 0.5 * (1.0 + sign * y)


def _no_result(action: str = "continue", confidence: float = 0.0) -> SignificanceResult:
    return SignificanceResult(
        is_significant=False,
        confidence=confidence,
        p_value=1.0,
        winner_id=None,
        winner_improvement=None,
        recommended_action=action,
    )


def calculate_significance(test: ABTest) -> SignificanceResult:
    """
    Two-proportion z-test of the best challenger against the control.

    The control is the variant flagged ``is_control`` (else the first by id);
    the challenger is the non-control variant with the highest rate on the
    test's winning metric. Both need ``min_sample_size`` impressions.
    """
    if len(test.variants) < 2:
        return _no_result()

    variants = sorted(test.variants, key=lambda v: v.id)
    control = next((v for v in variants if v.is_control), variants[0])
    challengers = [v for v in variants if v.id != control.id]
    metric = test.winning_metric
    challenger = max(challengers, key=lambda v: v.metrics.rate_for(metric))

    control_rate = control.metrics.rate_for(metric)
    challenger_rate = challenger.metrics.rate_for(metric)
    control_n = control.metrics.impressions
    challenger_n = challenger.metrics.impressions

    if control_n < test.min_sample_size or challenger_n < test.min_sample_size:
        return _no_result()

    pooled = (control_rate * control_n + challenger_rate * challenger_n) / (control_n + challenger_n)
    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / control_n + 1 / challenger_n))

    if standard_error == 0:
        return _no_result("no_difference", confidence=0.5)

    z_score = abs(control_rate - challenger_rate) / standard_error
    p_value = 2 * (1 - normal_cdf(z_score))
    confidence = 1 - p_value
    is_significant = confidence >= test.confidence_threshold

    winner_id = None
    improvement = None
    if is_significant and control_rate != challenger_rate:
        challenger_wins = challenger_rate > control_rate
        winner_id = challenger.id if challenger_wins else control.id
        loser_rate = control_rate if challenger_wins else challenger_rate
        best_rate = max(control_rate, challenger_rate)
        improvement = ((best_rate - loser_rate) / loser_rate) * 100 if loser_rate > 0 else 0.0

    return SignificanceResult(
        is_significant=is_significant,
        confidence=confidence,
        p_value=p_value,
        winner_id=winner_id,
        winner_improvement=improvement,
        recommended_action="declare_winner" if is_significant else "continue",
    )


class ABAllocator:
    """Stores A/B tests and variants and applies the allocation rules to them."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        graph_manager=None,
        default_confidence: float = 0.95,
        default_min_sample_size: int = 100,
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self.graph_manager = graph_manager
        self.default_confidence = default_confidence
        self.default_min_sample_size = default_min_sample_size
        self.clock = clock
        self._metrics_lock = threading.Lock()

    def _get_db_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    def create_test(
        self,
        workflow_id: str,
        step_id: str,
        name: str,
        winning_metric: WinningMetric = WinningMetric.READ_RATE,
        confidence_threshold: Optional[float] = None,
        min_sample_size: Optional[int] = None
    ) -> ABTest:
        """Create a draft test bound to one workflow step."""
        now = self.clock()
        db = self._get_db_session()
        try:
            row = ABTestModel(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                step_id=step_id,
                name=name,
                status=ABTestStatus.DRAFT.value,
                winning_metric=WinningMetric(winning_metric).value,
                confidence_threshold=confidence_threshold or self.default_confidence,
                min_sample_size=min_sample_size or self.default_min_sample_size,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.commit()
            logger.info(f"Created A/B test '{name}' ({row.id}) on step {step_id}")
            return self._to_test(row)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to create A/B test: {str(e)}", operation="create_test")
        finally:
            db.close()

    def add_variant(
        self,
        test_id: str,
        name: str,
        traffic_allocation: float,
        message_content: Optional[str] = None,
        template_id: Optional[str] = None,
        template_variables: Optional[Dict[str, str]] = None,
        is_control: bool = False,
        branch_id: Optional[str] = None
    ) -> ABVariant:
        """
        Add a variant to a test that has not started.

        Raises:
            ABTestError: If the test is running or completed
        """
        db = self._get_db_session()
        try:
            test_row = self._load_test_row(db, test_id)
            if test_row.status not in (ABTestStatus.DRAFT.value, ABTestStatus.PAUSED.value):
                raise ABTestError(
                    f"Cannot add variants to a {test_row.status} test", test_id=test_id
                )

            row = ABVariantModel(
                id=str(uuid.uuid4()),
                test_id=test_id,
                name=name,
                message_content=message_content,
                template_id=template_id,
                template_variables=template_variables or {},
                traffic_allocation=traffic_allocation,
                branch_id=branch_id,
                is_control=is_control,
                is_winner=False,
                metrics=VariantMetrics().model_dump(),
                created_at=self.clock(),
            )
            db.add(row)
            db.commit()
            return self._to_variant(row)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to add variant: {str(e)}", operation="add_variant")
        finally:
            db.close()

    def start_test(self, test_id: str) -> ABTest:
        """
        Start a test.

        Raises:
            ABTestError: With fewer than 2 variants, when allocations do not sum
                to 100 (within 0.01), or when the test already completed
        """
        test = self.get_test(test_id)
        if test.status == ABTestStatus.COMPLETED:
            raise ABTestError("Completed tests cannot be restarted", test_id=test_id)
        if len(test.variants) < 2:
            raise ABTestError("Test must have at least 2 variants", test_id=test_id)
        total = sum(v.traffic_allocation for v in test.variants)
        if abs(total - 100) > ALLOCATION_TOLERANCE:
            raise ABTestError(
                f"Traffic allocation must sum to 100% (got {total:g}%)", test_id=test_id
            ).add_details(total_allocation=total)

        self._update_test(test_id, status=ABTestStatus.RUNNING.value,
                          started_at=test.started_at or self.clock())
        logger.info(f"Started A/B test {test_id}")
        return self.get_test(test_id)

    def pause_test(self, test_id: str) -> ABTest:
        test = self.get_test(test_id)
        if test.status != ABTestStatus.RUNNING:
            raise ABTestError(f"Only running tests can be paused (test is {test.status.value})",
                              test_id=test_id)
        self._update_test(test_id, status=ABTestStatus.PAUSED.value)
        return self.get_test(test_id)

    def get_test(self, test_id: str) -> ABTest:
        """
        Load a test with its variants.

        Raises:
            NotFoundError: If the test does not exist
        """
        db = self._get_db_session()
        try:
            return self._to_test(self._load_test_row(db, test_id))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load A/B test: {str(e)}", operation="get_test")
        finally:
            db.close()

    def get_active_test_for_step(self, step_id: str, workflow_id: Optional[str] = None) -> Optional[ABTest]:
        """Return the running test bound to a step, if any."""
        db = self._get_db_session()
        try:
            query = db.query(ABTestModel).filter(
                ABTestModel.step_id == step_id,
                ABTestModel.status == ABTestStatus.RUNNING.value,
            )
            if workflow_id:
                query = query.filter(ABTestModel.workflow_id == workflow_id)
            row = query.order_by(ABTestModel.created_at.desc()).first()
            return self._to_test(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load active A/B test: {str(e)}", operation="get_active_test")
        finally:
            db.close()

    def select_variant_for_contact(self, test_id: str, contact_id: str) -> Optional[ABVariant]:
        return select_variant(self.get_test(test_id), contact_id)

    def record_event(self, variant_id: str, kind: MetricEvent) -> VariantMetrics:
        """Increment one counter on a variant and recompute its rates."""
        counter = _EVENT_COUNTERS[MetricEvent(kind)]
        with self._metrics_lock:
            db = self._get_db_session()
            try:
                row = db.query(ABVariantModel).filter(ABVariantModel.id == variant_id).first()
                if not row:
                    raise NotFoundError(f"Variant {variant_id} not found", operation="record_event")
                metrics = VariantMetrics.model_validate(row.metrics or {})
                setattr(metrics, counter, getattr(metrics, counter) + 1)
                metrics.recompute_rates()
                row.metrics = metrics.model_dump()
                db.commit()
                return metrics

            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to record {counter}: {str(e)}", operation="record_event")
            finally:
                db.close()

    def calculate_significance(self, test_id: str) -> SignificanceResult:
        return calculate_significance(self.get_test(test_id))

    def declare_winner(self, test_id: str, variant_id: str) -> ABTest:
        """
        Mark a variant as winner, complete the test and deploy the winner onto its step.

        Message steps receive the variant's content; split steps receive the
        variant's branch as ``winner_branch_id`` so later executions skip allocation.

        Raises:
            ABTestError: If the test already completed or the variant is not part of it
        """
        test = self.get_test(test_id)
        if test.status == ABTestStatus.COMPLETED:
            raise ABTestError("Test already has a winner", test_id=test_id)
        winner = test.get_variant(variant_id)
        if winner is None:
            raise ABTestError(f"Variant {variant_id} does not belong to this test", test_id=test_id)

        now = self.clock()
        db = self._get_db_session()
        try:
            db.query(ABVariantModel).filter(ABVariantModel.id == variant_id).update(
                {ABVariantModel.is_winner: True}, synchronize_session=False
            )
            db.query(ABTestModel).filter(ABTestModel.id == test_id).update(
                {
                    ABTestModel.status: ABTestStatus.COMPLETED.value,
                    ABTestModel.winner_id: variant_id,
                    ABTestModel.completed_at: now,
                    ABTestModel.updated_at: now,
                },
                synchronize_session=False,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to declare winner: {str(e)}", operation="declare_winner")
        finally:
            db.close()

        logger.info(f"Variant {variant_id} declared winner of A/B test {test_id}")
        self._deploy_winner(test, winner)
        return self.get_test(test_id)

    def _deploy_winner(self, test: ABTest, winner: ABVariant) -> None:
        if self.graph_manager is None:
            return
        graph = self.graph_manager.get_graph(test.workflow_id)
        node = graph.get_node(test.step_id)
        if node is None:
            logger.warning(f"Step {test.step_id} no longer exists in workflow {test.workflow_id}")
            return

        if node.type == NodeType.SPLIT.value:
            updates = {"winner_branch_id": winner.route}
        elif node.type == NodeType.MESSAGE.value:
            updates = {
                "custom_message": winner.message_content,
                "template_id": winner.template_id,
                "template_variables": dict(winner.template_variables),
            }
        else:
            return
        self.graph_manager.update_node_data(test.workflow_id, test.step_id, updates)

    def _update_test(self, test_id: str, **values) -> None:
        db = self._get_db_session()
        try:
            row = self._load_test_row(db, test_id)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = self.clock()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update A/B test: {str(e)}", operation="update_test")
        finally:
            db.close()

    @staticmethod
    def _load_test_row(db: Session, test_id: str) -> ABTestModel:
        row = db.query(ABTestModel).filter(ABTestModel.id == test_id).first()
        if not row:
            raise NotFoundError(f"A/B test {test_id} not found", operation="get_test", table="ab_tests")
        return row

    @classmethod
    def _to_test(cls, row: ABTestModel) -> ABTest:
        return ABTest(
            id=row.id,
            workflow_id=row.workflow_id,
            step_id=row.step_id,
            name=row.name,
            status=ABTestStatus(row.status),
            winning_metric=WinningMetric(row.winning_metric),
            confidence_threshold=row.confidence_threshold,
            min_sample_size=row.min_sample_size,
            winner_id=row.winner_id,
            variants=[cls._to_variant(v) for v in row.variants],
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_variant(row: ABVariantModel) -> ABVariant:
        return ABVariant(
            id=row.id,
            test_id=row.test_id,
            name=row.name,
            message_content=row.message_content,
            template_id=row.template_id,
            template_variables=row.template_variables or {},
            traffic_allocation=row.traffic_allocation,
            branch_id=row.branch_id,
            is_control=bool(row.is_control),
            is_winner=bool(row.is_winner),
            metrics=VariantMetrics.model_validate(row.metrics or {}),
            created_at=row.created_at,
        )

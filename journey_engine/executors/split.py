"""A/B split executor."""

from typing import Any, Dict, Optional, Tuple

from ..core.ab_allocator import allocate, select_variant
from ..core.exceptions import (
    JourneyEngineError,
    LogicExecutorError,
    NotFoundError,
    TransientExecutorError,
)
from ..core.logging import get_logger
from ..models.ab_testing import ABTest, ABTestStatus, MetricEvent
from ..models.core import NodeType
from .base import AbstractNodeExecutor, ExecutionContext, NodeOutcome

logger = get_logger(__name__)


class SplitExecutor(AbstractNodeExecutor):
    """
    Routes a contact down one branch of a split step.

    Precedence: a deployed winner (``winner_branch_id`` or a completed test's
    winner), then the running A/B test bound to the step, then deterministic
    allocation over the inline branch percentages.
    """

    node_type = NodeType.SPLIT

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        test = self._load_test(node, ctx)
        output: Dict[str, Any] = {}

        if config.winner_branch_id:
            branch_id, source = config.winner_branch_id, "winner"
        elif test is not None and test.status == ABTestStatus.COMPLETED and test.winner_id:
            branch_id, source = test.get_variant(test.winner_id).route, "winner"
        elif test is not None and test.status == ABTestStatus.RUNNING and test.variants:
            branch_id, variant_id = self._allocate_test(node, test, ctx)
            source = "ab_test"
            output.update({"test_id": test.id, "variant_id": variant_id})
        else:
            branch_id, source = self._allocate_inline(node, ctx), "branches"

        self._require_edge(node, ctx, branch_id)

        output.update({"branch_id": branch_id, "source": source})
        return NodeOutcome(
            next_handle=branch_id,
            context_updates={f"split_{node.id}": branch_id},
            output=output,
        )

    @staticmethod
    def _load_test(node, ctx: ExecutionContext) -> Optional[ABTest]:
        allocator = ctx.services.allocator
        if allocator is None:
            return None
        try:
            if node.data.test_id:
                return allocator.get_test(node.data.test_id)
            return allocator.get_active_test_for_step(node.id, ctx.graph.workflow_id)
        except NotFoundError as e:
            raise LogicExecutorError(
                f"A/B test '{node.data.test_id}' bound to split does not exist", node_id=node.id
            ) from e
        except JourneyEngineError as e:
            raise TransientExecutorError(f"Could not load A/B test: {e.message}", node_id=node.id) from e

    @staticmethod
    def _require_edge(node, ctx: ExecutionContext, branch_id: str) -> None:
        if not ctx.graph.has_handle(node.id, branch_id):
            raise LogicExecutorError(
                f"Split branch '{branch_id}' has no outgoing connection", node_id=node.id
            )

    def _allocate_test(self, node, test: ABTest, ctx: ExecutionContext) -> Tuple[str, str]:
        variant = select_variant(test, ctx.execution.contact_id)
        # impressions only count for contacts that can actually take the branch
        self._require_edge(node, ctx, variant.route)
        try:
            ctx.services.allocator.record_event(variant.id, MetricEvent.IMPRESSION)
        except JourneyEngineError as e:
            raise TransientExecutorError(f"Could not record impression: {e.message}") from e
        logger.debug(f"Contact {ctx.execution.contact_id} allocated to variant {variant.id}")
        return variant.route, variant.id

    @staticmethod
    def _allocate_inline(node, ctx: ExecutionContext) -> str:
        branches = sorted(node.data.branches or [], key=lambda b: b.id)
        if not branches:
            raise LogicExecutorError("Split node has no branches", node_id=node.id)
        branch = allocate(branches, ctx.execution.contact_id, lambda b: b.percentage)
        return branch.id

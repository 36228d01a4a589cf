"""Tests for deterministic allocation, significance and the A/B test store."""

import pytest

from conftest import edge, goal, make_workflow, message, trigger

from journey_engine.core.ab_allocator import (
    bucket_for,
    calculate_significance,
    hash_contact_id,
    normal_cdf,
    select_variant,
)
from journey_engine.core.exceptions import ABTestError, NotFoundError
from journey_engine.models.ab_testing import (
    ABTest,
    ABTestStatus,
    ABVariant,
    MetricEvent,
    VariantMetrics,
    WinningMetric,
)


def variant(variant_id, allocation, read=0, delivered=200, impressions=200, is_control=False):
    metrics = VariantMetrics(impressions=impressions, delivered=delivered, read=read).recompute_rates()
    return ABVariant(
        id=variant_id,
        test_id="t-1",
        name=variant_id.upper(),
        traffic_allocation=allocation,
        is_control=is_control,
        metrics=metrics,
    )


def ab_test(*variants, **kwargs):
    return ABTest(
        id="t-1",
        workflow_id="wf-1",
        step_id="split",
        name="Subject line",
        status=ABTestStatus.RUNNING,
        winning_metric=WinningMetric.READ_RATE,
        variants=list(variants),
        **kwargs
    )


class TestHashing:
    """Test cases for the contact hash and bucket."""

    def test_hash_matches_rolling_polynomial(self):
        assert hash_contact_id("") == 0
        assert hash_contact_id("a") == 97
        assert hash_contact_id("ab") == 97 * 31 + 98

    def test_hash_wraps_to_signed_32_bits(self):
        value = hash_contact_id("contact-with-a-rather-long-identifier-0123456789")
        assert -2 ** 31 <= value < 2 ** 31

    def test_bucket_range(self):
        for i in range(200):
            assert 0 <= bucket_for(f"contact-{i}") < 100


class TestSelectVariant:
    """Test cases for deterministic variant selection."""

    def test_selection_is_stable(self):
        test = ab_test(variant("a", 50), variant("b", 50))
        first = [select_variant(test, f"c-{i}").id for i in range(50)]
        second = [select_variant(test, f"c-{i}").id for i in range(50)]
        assert first == second

    def test_selection_ignores_variant_order(self):
        forward = ab_test(variant("a", 30), variant("b", 70))
        backward = ab_test(variant("b", 70), variant("a", 30))
        for i in range(50):
            assert select_variant(forward, f"c-{i}").id == select_variant(backward, f"c-{i}").id

    def test_walks_cumulative_allocation_in_id_order(self):
        test = ab_test(variant("b", 60), variant("a", 40))
        for i in range(100):
            contact = f"contact-{i}"
            expected = "a" if bucket_for(contact) < 40 else "b"
            assert select_variant(test, contact).id == expected

    def test_zero_allocation_variant_never_selected(self):
        test = ab_test(variant("a", 100), variant("b", 0))
        assert {select_variant(test, f"c-{i}").id for i in range(100)} == {"a"}

    def test_no_variants(self):
        assert select_variant(ab_test(), "c-1") is None


class TestSignificance:
    """Test cases for the two-proportion z-test."""

    def test_normal_cdf(self):
        assert normal_cdf(0) == pytest.approx(0.5, abs=1e-7)
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-3)
        assert normal_cdf(-1.96) == pytest.approx(0.025, abs=1e-3)

    def test_clear_winner_is_significant(self):
        test = ab_test(
            variant("control", 50, read=100, is_control=True),
            variant("challenger", 50, read=140),
        )
        result = calculate_significance(test)

        assert result.is_significant
        assert result.confidence >= 0.95
        assert result.winner_id == "challenger"
        assert result.winner_improvement == pytest.approx(40.0)
        assert result.recommended_action == "declare_winner"

    def test_control_can_win(self):
        test = ab_test(
            variant("control", 50, read=140, is_control=True),
            variant("challenger", 50, read=100),
        )
        result = calculate_significance(test)

        assert result.is_significant
        assert result.winner_id == "control"

    def test_equal_rates_are_not_significant(self):
        test = ab_test(
            variant("control", 50, read=100, is_control=True),
            variant("challenger", 50, read=100),
        )
        result = calculate_significance(test)

        assert not result.is_significant
        assert result.winner_id is None
        assert result.recommended_action == "continue"

    def test_below_minimum_sample_size(self):
        test = ab_test(
            variant("control", 50, read=10, delivered=20, impressions=20, is_control=True),
            variant("challenger", 50, read=19, delivered=20, impressions=20),
        )
        result = calculate_significance(test)

        assert not result.is_significant
        assert result.recommended_action == "continue"

    def test_zero_variance_means_no_difference(self):
        test = ab_test(
            variant("control", 50, read=0, is_control=True),
            variant("challenger", 50, read=0),
        )
        result = calculate_significance(test)

        assert not result.is_significant
        assert result.confidence == 0.5
        assert result.recommended_action == "no_difference"

    def test_first_variant_by_id_is_control_by_default(self):
        test = ab_test(variant("b", 50, read=140), variant("a", 50, read=100))
        result = calculate_significance(test)
        assert result.winner_id == "b"


class TestABAllocator:
    """Test cases for the persisted A/B test lifecycle."""

    def _test_with_variants(self, allocator, *allocations):
        test = allocator.create_test("wf-1", "split", "Subject line")
        for i, allocation in enumerate(allocations):
            allocator.add_variant(test.id, f"V{i}", allocation, message_content=f"Copy {i}",
                                  is_control=(i == 0))
        return test

    def test_create_uses_defaults(self, allocator):
        test = allocator.create_test("wf-1", "split", "Subject line")

        assert test.status == ABTestStatus.DRAFT
        assert test.confidence_threshold == 0.95
        assert test.min_sample_size == 100

    def test_start_requires_two_variants(self, allocator):
        test = self._test_with_variants(allocator, 100)
        with pytest.raises(ABTestError, match="at least 2 variants"):
            allocator.start_test(test.id)

    def test_start_requires_allocation_of_100(self, allocator):
        test = self._test_with_variants(allocator, 50, 40)
        with pytest.raises(ABTestError, match="sum to 100"):
            allocator.start_test(test.id)

    def test_start_accepts_rounding_tolerance(self, allocator):
        test = self._test_with_variants(allocator, 33.333, 33.333, 33.333)
        started = allocator.start_test(test.id)

        assert started.status == ABTestStatus.RUNNING
        assert started.started_at is not None

    def test_cannot_add_variant_to_running_test(self, allocator):
        test = self._test_with_variants(allocator, 50, 50)
        allocator.start_test(test.id)
        with pytest.raises(ABTestError):
            allocator.add_variant(test.id, "late", 10)

    def test_pause_only_running(self, allocator):
        test = self._test_with_variants(allocator, 50, 50)
        with pytest.raises(ABTestError):
            allocator.pause_test(test.id)
        allocator.start_test(test.id)
        assert allocator.pause_test(test.id).status == ABTestStatus.PAUSED

    def test_active_test_for_step(self, allocator):
        test = self._test_with_variants(allocator, 50, 50)
        assert allocator.get_active_test_for_step("split", "wf-1") is None
        allocator.start_test(test.id)
        assert allocator.get_active_test_for_step("split", "wf-1").id == test.id
        assert allocator.get_active_test_for_step("split", "other-wf") is None

    def test_record_event_recomputes_rates(self, allocator):
        test = self._test_with_variants(allocator, 50, 50)
        variant_id = allocator.get_test(test.id).variants[0].id

        for _ in range(4):
            allocator.record_event(variant_id, MetricEvent.IMPRESSION)
        allocator.record_event(variant_id, MetricEvent.DELIVERED)
        allocator.record_event(variant_id, MetricEvent.DELIVERED)
        metrics = allocator.record_event(variant_id, MetricEvent.READ)

        assert metrics.impressions == 4
        assert metrics.delivery_rate == pytest.approx(0.5)
        assert metrics.read_rate == pytest.approx(0.5)

    def test_record_event_for_unknown_variant(self, allocator):
        with pytest.raises(NotFoundError):
            allocator.record_event("missing", MetricEvent.READ)

    def test_get_missing_test(self, allocator):
        with pytest.raises(NotFoundError):
            allocator.get_test("missing")

    def test_declare_winner_deploys_message_content(self, allocator, graph_manager):
        graph_manager.create_workflow(make_workflow(
            [trigger(), message("welcome", "Original copy"), goal()],
            [edge("start", "welcome"), edge("welcome", "goal")],
        ))
        test = allocator.create_test("wf-1", "welcome", "Welcome copy")
        allocator.add_variant(test.id, "A", 50, message_content="Copy A", is_control=True)
        allocator.add_variant(test.id, "B", 50, message_content="Copy B")
        allocator.start_test(test.id)
        winner = next(v for v in allocator.get_test(test.id).variants if v.name == "B")

        completed = allocator.declare_winner(test.id, winner.id)

        assert completed.status == ABTestStatus.COMPLETED
        assert completed.winner_id == winner.id
        assert completed.get_variant(winner.id).is_winner
        step = graph_manager.get_graph("wf-1").get_node("welcome")
        assert step.data.custom_message == "Copy B"

        with pytest.raises(ABTestError):
            allocator.declare_winner(test.id, winner.id)

    def test_declare_winner_rejects_foreign_variant(self, allocator):
        test = self._test_with_variants(allocator, 50, 50)
        with pytest.raises(ABTestError):
            allocator.declare_winner(test.id, "not-a-variant")

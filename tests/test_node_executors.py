"""Tests for the node executors."""

from datetime import datetime, timedelta

import pytest

from conftest import START, edge, goal, make_workflow, message, trigger

from journey_engine.core.ab_allocator import bucket_for
from journey_engine.core.collaborators import LoggingMessagingClient, WebhookResponse
from journey_engine.core.exceptions import (
    ConfigurationError,
    LogicExecutorError,
    TransientExecutorError,
)
from journey_engine.core.graph import GraphModel
from journey_engine.core.triggers import trigger_matches
from journey_engine.executors import ExecutionContext, NodeExecutorRegistry, build_default_registry
from journey_engine.executors.logic import evaluate_rule
from journey_engine.executors.messaging import render_text
from journey_engine.executors.timing import duration
from journey_engine.models.core import Execution, NodeType, TriggerConfig, WakeCondition, WakeKind


ADA = {"id": "c-1", "name": "Ada", "phone": "+15550001", "tags": ["vip"], "score": 42,
       "profile": {"city": "London"}}


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def run_node(registry, services):
    """Execute one node of a workflow for a contact and return (outcome, ctx)."""
    def run(workflow, node_id, contact=None, context=None, contact_id="c-1"):
        graph = GraphModel(workflow)
        ctx = ExecutionContext(
            execution=Execution(id="ex-1", workflow_id=workflow.id, contact_id=contact_id,
                                context=dict(context or {})),
            graph=graph,
            contact=dict(ADA if contact is None else contact),
            now=START,
            services=services,
        )
        node = graph.get_node(node_id)
        return registry.get(node.type).execute(node, ctx), ctx
    return run


def single(node, handles=(None,)):
    """Workflow of trigger -> node -> one goal per handle."""
    nodes = [trigger(), node]
    edges = [edge("start", node["id"])]
    for i, handle in enumerate(handles):
        nodes.append(goal(f"g{i}"))
        edges.append(edge(node["id"], f"g{i}", handle))
    return make_workflow(nodes, edges)


class TestRegistry:
    """Test cases for the executor registry."""

    def test_default_registry_covers_every_node_type(self, registry):
        assert registry.registered_types() == set(NodeType)

    def test_incomplete_registry_is_rejected(self):
        with pytest.raises(ConfigurationError, match="Missing executors"):
            NodeExecutorRegistry().ensure_complete()

    def test_unknown_type(self, registry):
        with pytest.raises(ConfigurationError):
            registry.get("carrier_pigeon")


class TestMessageExecutor:
    """Test cases for message rendering and delivery."""

    def test_sends_rendered_text(self, run_node, messaging):
        outcome, _ = run_node(single(message("m", "Hi {{name}}, welcome to {{profile.city}}")), "m")

        assert messaging.sent == [{
            "phone_number": "+15550001",
            "content": {"type": "text", "text": "Hi Ada, welcome to London"},
        }]
        record = outcome.context_updates["message_m"]
        assert record["delivery_id"] == "msg-1"
        assert record["status"] == "sent"
        assert record["sent_at"] == START.isoformat()
        assert outcome.next_handle is None
        assert outcome.suspend is None

    def test_falls_back_when_contact_has_no_name(self, run_node, messaging):
        contact = {"id": "c-2", "name": "", "phone": "+15550002"}
        run_node(single(message("m")), "m", contact=contact, contact_id="c-2")

        assert messaging.sent[0]["content"]["text"] == "Hi there!"

    def test_template_variables_are_rendered(self, run_node, messaging):
        node = {"id": "m", "type": "message", "data": {
            "template_id": "tpl-welcome",
            "template_variables": {"1": "{{name}}", "2": "{{trigger.plan}}"},
        }}
        run_node(single(node), "m", context={"trigger": {"plan": "gold"}})

        assert messaging.sent[0]["content"] == {
            "type": "template",
            "template_id": "tpl-welcome",
            "variables": {"1": "Ada", "2": "gold"},
        }

    def test_media_is_attached_to_text(self, run_node, messaging):
        node = message("m", "See attached")
        node["data"].update({"media_url": "https://cdn.example.com/a.png", "media_type": "image"})
        run_node(single(node), "m")

        content = messaging.sent[0]["content"]
        assert content["media_url"] == "https://cdn.example.com/a.png"
        assert content["media_type"] == "image"

    def test_missing_phone_is_a_logic_error(self, run_node):
        with pytest.raises(LogicExecutorError, match="no phone number"):
            run_node(single(message("m")), "m", contact={"id": "c-3", "name": "Grace"}, contact_id="c-3")

    def test_transport_failure_is_transient(self, run_node, messaging):
        messaging.failures = 1
        with pytest.raises(TransientExecutorError):
            run_node(single(message("m")), "m")

    def test_render_text_blanks_unknown_fields(self, services):
        ctx = ExecutionContext(
            execution=Execution(id="ex-1", workflow_id="wf-1", contact_id="c-1"),
            graph=GraphModel(single(message("m"))),
            contact=dict(ADA),
            now=START,
            services=services,
        )
        assert render_text("{{ contact_name }}:{{missing}}:{{score}}", ctx, "Ada") == "Ada::42"


class TestActionExecutor:
    """Test cases for contact actions."""

    def test_add_tag(self, run_node):
        node = {"id": "a", "type": "action", "data": {"action_type": "add_tag", "tag_ids": ["t1", "t2"]}}
        outcome, _ = run_node(single(node), "a")

        record = outcome.context_updates["action_a"]
        assert record["action_type"] == "add_tag"
        assert record["result"]["applied"] is True

    def test_missing_parameter(self, run_node):
        node = {"id": "a", "type": "action", "data": {"action_type": "add_to_list"}}
        with pytest.raises(LogicExecutorError, match="list_id"):
            run_node(single(node), "a")

    def test_unknown_action_type(self, run_node):
        node = {"id": "a", "type": "action", "data": {"action_type": "teleport"}}
        with pytest.raises(LogicExecutorError, match="Unknown action type"):
            run_node(single(node), "a")


class TestWebhookExecutor:
    """Test cases for outbound webhooks."""

    def _node(self, **data):
        config = {"url": "https://hooks.example.com/lead", "method": "post"}
        config.update(data)
        return {"id": "w", "type": "webhook", "data": config}

    def test_success_follows_success_handle(self, run_node, webhooks):
        outcome, _ = run_node(single(self._node(), handles=("success", "failure")), "w")

        assert outcome.next_handle == "success"
        assert outcome.context_updates["webhook_w"] == {"status_code": 200, "ok": True}
        call = webhooks.calls[0]
        assert call["method"] == "POST"
        assert call["timeout"] == 5

    def test_success_without_named_handle_uses_default_edge(self, run_node):
        outcome, _ = run_node(single(self._node()), "w")
        assert outcome.next_handle is None
        assert not outcome.terminal

    def test_success_without_edges_ends_execution(self, run_node):
        workflow = make_workflow([trigger(), self._node()], [edge("start", "w")])
        outcome, _ = run_node(workflow, "w")
        assert outcome.terminal

    def test_response_is_captured(self, run_node, webhooks):
        webhooks.responses.append(WebhookResponse(status_code=201, body={"lead_id": 7}))
        outcome, _ = run_node(single(self._node(response_field="crm", timeout=30)), "w")

        assert outcome.context_updates["crm"] == {"lead_id": 7}
        assert webhooks.calls[0]["timeout"] == 30

    @pytest.mark.parametrize("status", [500, 503, 429])
    def test_server_errors_are_transient(self, run_node, webhooks, status):
        webhooks.responses.append(WebhookResponse(status_code=status))
        with pytest.raises(TransientExecutorError):
            run_node(single(self._node(), handles=("success", "failure")), "w")

    def test_client_error_follows_failure_handle(self, run_node, webhooks):
        webhooks.responses.append(WebhookResponse(status_code=404, body="no such lead"))
        outcome, _ = run_node(single(self._node(), handles=("success", "failure")), "w")

        assert outcome.next_handle == "failure"
        assert outcome.context_updates["webhook_w"]["ok"] is False

    def test_client_error_without_failure_handle(self, run_node, webhooks):
        webhooks.responses.append(WebhookResponse(status_code=400, body={"error": "bad"}))
        with pytest.raises(LogicExecutorError, match="returned 400"):
            run_node(single(self._node()), "w")

    def test_invalid_method(self, run_node):
        with pytest.raises(LogicExecutorError, match="Unsupported webhook method"):
            run_node(single(self._node(method="TRACE")), "w")


class TestAIExecutor:
    """Test cases for AI steps."""

    def test_reads_configured_input_field(self, run_node, ai_client):
        node = {"id": "ai", "type": "ai", "data": {
            "action": "sentiment_analysis", "input_field": "trigger.reply", "model": "small"}}
        outcome, _ = run_node(single(node), "ai", context={"trigger": {"reply": "Love it"}})

        assert ai_client.requests == [
            {"text": "Love it", "kind": "sentiment_analysis", "options": {"model": "small"}}
        ]
        assert outcome.context_updates["ai_ai"]["label"] == "positive"

    def test_falls_back_to_last_inbound_message(self, run_node, ai_client):
        node = {"id": "ai", "type": "ai", "data": {"action": "categorize"}}
        run_node(single(node), "ai", context={"last_message": "Where is my order?"})

        assert ai_client.requests[0]["text"] == "Where is my order?"

    def test_no_input(self, run_node):
        node = {"id": "ai", "type": "ai", "data": {"action": "translate"}}
        with pytest.raises(LogicExecutorError, match="no input text"):
            run_node(single(node), "ai")

    def test_unknown_action(self, run_node):
        node = {"id": "ai", "type": "ai", "data": {"action": "write_poem", "input_field": "name"}}
        with pytest.raises(LogicExecutorError):
            run_node(single(node), "ai")


class TestConditionExecutor:
    """Test cases for condition evaluation."""

    @pytest.mark.parametrize("value, operator, expected, result", [
        ("gold", "equals", "gold", True),
        (42, "equals", "42", True),
        ("gold", "not_equals", "silver", True),
        (["vip", "beta"], "contains", "vip", True),
        ("Hello World", "contains", "world", True),
        (None, "contains", "x", False),
        (["vip"], "not_contains", "churned", True),
        (42, "greater_than", 10, True),
        ("abc", "greater_than", 10, False),
        (3, "less_than", "4.5", True),
        (None, "is_empty", None, True),
        ([], "is_empty", None, True),
        (0, "is_empty", None, False),
        ("x", "is_not_empty", None, True),
    ])
    def test_operators(self, value, operator, expected, result):
        assert evaluate_rule(value, operator, expected) is result

    def test_unknown_operator(self):
        with pytest.raises(LogicExecutorError):
            evaluate_rule(1, "approximately", 1)

    def test_single_condition_branches(self, run_node):
        node = {"id": "c", "type": "condition",
                "data": {"field": "score", "operator": "greater_than", "value": 40}}
        outcome, _ = run_node(single(node, handles=("true", "false")), "c")

        assert outcome.next_handle == "true"
        assert outcome.context_updates == {"condition_c": True}

    def test_tag_alias(self, run_node):
        node = {"id": "c", "type": "condition",
                "data": {"field": "tag", "operator": "contains", "value": "vip"}}
        outcome, _ = run_node(single(node, handles=("true", "false")), "c")
        assert outcome.next_handle == "true"

    def test_compound_conditions_fold_left_to_right(self, run_node):
        node = {"id": "c", "type": "condition", "data": {"conditions": [
            {"field": "score", "operator": "less_than", "value": 10, "logical_operator": "OR"},
            {"field": "tags", "operator": "contains", "value": "vip", "logical_operator": "AND"},
            {"field": "profile.city", "operator": "equals", "value": "Paris"},
        ]}}
        outcome, _ = run_node(single(node, handles=("true", "false")), "c")

        # (false OR true) AND false
        assert outcome.next_handle == "false"

    def test_condition_on_execution_context(self, run_node):
        node = {"id": "c", "type": "condition",
                "data": {"field": "trigger.source", "operator": "equals", "value": "ads"}}
        outcome, _ = run_node(single(node, handles=("true", "false")), "c",
                              context={"trigger": {"source": "ads"}})
        assert outcome.next_handle == "true"

    def test_missing_field(self, run_node):
        node = {"id": "c", "type": "condition", "data": {"operator": "equals", "value": 1}}
        with pytest.raises(LogicExecutorError):
            run_node(single(node, handles=("true", "false")), "c")


class TestTimingExecutors:
    """Test cases for delay and wait_until."""

    @pytest.mark.parametrize("amount, unit, expected", [
        (15, "minutes", timedelta(minutes=15)),
        (2, "hours", timedelta(hours=2)),
        (1, "days", timedelta(days=1)),
        (1, "weeks", timedelta(days=7)),
        (0.5, "days", timedelta(hours=12)),
    ])
    def test_duration(self, amount, unit, expected):
        assert duration(amount, unit) == expected

    @pytest.mark.parametrize("amount, unit", [(0, "days"), (-1, "hours"), (None, "days"), (1, "fortnights")])
    def test_invalid_duration(self, amount, unit):
        with pytest.raises(LogicExecutorError):
            duration(amount, unit)

    def test_delay_suspends_until_wake_time(self, run_node):
        outcome, _ = run_node(single({"id": "d", "type": "delay", "data": {"amount": 3, "unit": "hours"}}), "d")

        wake = outcome.suspend
        assert wake.kind == WakeKind.TIME
        assert wake.node_id == "d"
        assert wake.wake_at == START + timedelta(hours=3)

    def test_wait_for_event_with_timeout(self, run_node):
        node = {"id": "w", "type": "wait_until", "data": {
            "event_type": "replied", "timeout_amount": 2, "timeout_unit": "days"}}
        outcome, _ = run_node(single(node, handles=("event", "timeout")), "w")

        wake = outcome.suspend
        assert wake.kind == WakeKind.EVENT
        assert wake.event_type == "replied"
        assert wake.timeout_at == START + timedelta(days=2)
        assert not wake.is_satisfied(START + timedelta(days=1))
        assert wake.is_satisfied(START + timedelta(days=2))

    def test_specific_date_in_the_past_proceeds(self, run_node):
        node = {"id": "w", "type": "wait_until", "data": {
            "event_type": "specific_date", "date": (START - timedelta(days=1)).isoformat()}}
        outcome, _ = run_node(single(node), "w")

        assert outcome.suspend is None
        assert outcome.output["skipped"] is True

    def test_specific_date_in_the_future_waits(self, run_node):
        node = {"id": "w", "type": "wait_until", "data": {
            "event_type": "specific_date", "date": "2024-03-05T12:00:00+00:00"}}
        outcome, _ = run_node(single(node), "w")

        assert outcome.suspend.kind == WakeKind.TIME
        assert outcome.suspend.wake_at == datetime(2024, 3, 5, 12, 0, 0)

    def test_resume_picks_event_or_timeout_branch(self, registry, services):
        workflow = single({"id": "w", "type": "wait_until", "data": {"event_type": "replied"}},
                          handles=("event", "timeout"))
        graph = GraphModel(workflow)
        node = graph.get_node("w")
        ctx = ExecutionContext(
            execution=Execution(id="ex-1", workflow_id="wf-1", contact_id="c-1"),
            graph=graph, contact=dict(ADA), now=START, services=services,
        )
        executor = registry.get("wait_until")

        received = WakeCondition(kind=WakeKind.EVENT, node_id="w", event_type="replied", event_received=True)
        timed_out = WakeCondition(kind=WakeKind.EVENT, node_id="w", event_type="replied", timeout_at=START)

        assert executor.on_resume(node, ctx, received).next_handle == "event"
        assert executor.on_resume(node, ctx, timed_out).next_handle == "timeout"
        assert executor.on_resume(node, ctx, timed_out).context_updates == {"wait_w": "timeout"}

    def test_resume_without_matching_edge_ends(self, registry, services):
        workflow = single({"id": "w", "type": "wait_until", "data": {"event_type": "replied"}},
                          handles=("event",))
        graph = GraphModel(workflow)
        ctx = ExecutionContext(
            execution=Execution(id="ex-1", workflow_id="wf-1", contact_id="c-1"),
            graph=graph, contact=dict(ADA), now=START, services=services,
        )
        wake = WakeCondition(kind=WakeKind.EVENT, node_id="w", event_type="replied", timeout_at=START)

        outcome = registry.get("wait_until").on_resume(graph.get_node("w"), ctx, wake)
        assert outcome.terminal


class TestSplitExecutor:
    """Test cases for split routing."""

    def _split(self, **data):
        config = {"branches": [{"id": "a", "name": "Short", "percentage": 50},
                               {"id": "b", "name": "Long", "percentage": 50}]}
        config.update(data)
        return single({"id": "split", "type": "split", "data": config}, handles=("a", "b"))

    def test_inline_branches_are_deterministic(self, run_node):
        outcome, _ = run_node(self._split(), "split")
        expected = "a" if bucket_for("c-1") < 50 else "b"

        assert outcome.next_handle == expected
        assert outcome.context_updates == {"split_split": expected}
        assert outcome.output["source"] == "branches"

        again, _ = run_node(self._split(), "split")
        assert again.next_handle == expected

    def test_deployed_winner_wins(self, run_node):
        outcome, _ = run_node(self._split(winner_branch_id="b"), "split")
        assert outcome.next_handle == "b"
        assert outcome.output["source"] == "winner"

    def test_running_test_allocates_and_counts_impression(self, run_node, allocator):
        test = allocator.create_test("wf-1", "split", "Copy length")
        allocator.add_variant(test.id, "Short", 50, branch_id="a", is_control=True)
        allocator.add_variant(test.id, "Long", 50, branch_id="b")
        allocator.start_test(test.id)

        outcome, _ = run_node(self._split(), "split")

        variant = allocator.get_test(test.id).get_variant(outcome.output["variant_id"])
        assert outcome.output["source"] == "ab_test"
        assert outcome.next_handle == variant.route
        assert variant.metrics.impressions == 1

    def test_completed_test_routes_to_winner(self, run_node, allocator, graph_manager):
        graph_manager.create_workflow(self._split())
        test = allocator.create_test("wf-1", "split", "Copy length")
        allocator.add_variant(test.id, "Short", 50, branch_id="a", is_control=True)
        long_variant = allocator.add_variant(test.id, "Long", 50, branch_id="b")
        allocator.start_test(test.id)
        allocator.declare_winner(test.id, long_variant.id)

        outcome, _ = run_node(self._split(test_id=test.id), "split")

        assert outcome.next_handle == "b"
        assert outcome.output["source"] == "winner"
        assert graph_manager.get_graph("wf-1").get_node("split").data.winner_branch_id == "b"

    def test_unknown_bound_test(self, run_node):
        with pytest.raises(LogicExecutorError, match="does not exist"):
            run_node(self._split(test_id="missing"), "split")

    def test_branch_without_edge(self, run_node):
        with pytest.raises(LogicExecutorError, match="no outgoing connection"):
            run_node(self._split(winner_branch_id="c"), "split")

    def test_test_variant_without_edge_records_no_impression(self, run_node, allocator):
        test = allocator.create_test("wf-1", "split", "Copy length")
        allocator.add_variant(test.id, "Short", 0, branch_id="a", is_control=True)
        long_variant = allocator.add_variant(test.id, "Long", 100, branch_id="b")
        allocator.start_test(test.id)
        workflow = single({"id": "split", "type": "split", "data": {
            "branches": [{"id": "a", "name": "Short", "percentage": 100}]}}, handles=("a",))

        with pytest.raises(LogicExecutorError, match="'b' has no outgoing connection"):
            run_node(workflow, "split")

        assert allocator.get_test(test.id).get_variant(long_variant.id).metrics.impressions == 0


class TestGoalAndTrigger:
    """Test cases for goal and trigger nodes."""

    def test_goal_records_conversion_and_ends(self, run_node):
        workflow = make_workflow([trigger(), goal("goal", "Booked demo")], [edge("start", "goal")])
        outcome, _ = run_node(workflow, "goal")

        assert outcome.terminal
        record = outcome.context_updates["goal_goal"]
        assert record["goal_name"] == "Booked demo"
        assert record["achieved_at"] == START.isoformat()

    def test_trigger_passes_through(self, run_node):
        workflow = make_workflow([trigger(), goal()], [edge("start", "goal")])
        outcome, _ = run_node(workflow, "start")

        assert outcome.next_handle is None
        assert outcome.output == {"trigger_type": "contact_created"}


class TestTriggerMatching:
    """Test cases for matching contact events against trigger filters."""

    @pytest.mark.parametrize("trigger_type,filters,event_type,data,expected", [
        ("tag_applied", {"tag_ids": ["vip"]}, "tag_applied", {"tag_id": "vip"}, True),
        ("tag_applied", {"tag_ids": ["vip"]}, "tag_applied", {"tag_id": "churn"}, False),
        ("tag_applied", {}, "tag_applied", {"tag_id": "churn"}, True),
        ("contact_added", {"list_ids": ["l-1"]}, "contact_added", {"list_id": "l-2"}, False),
        ("contact_added", {"list_ids": ["l-1"]}, "contact_added", {}, True),
        ("contact_added", {"tag_ids": ["l-1"]}, "contact_added", {"list_id": "l-1"}, True),
        ("custom_field_changed", {"field_name": "plan"}, "custom_field_changed",
         {"field_name": "plan", "field_value": "pro"}, True),
        ("custom_field_changed", {"field_name": "plan", "field_value": "pro"}, "custom_field_changed",
         {"field_name": "plan", "field_value": "free"}, False),
        ("custom_field_changed", {"field_name": "plan"}, "custom_field_changed",
         {"field_name": "city"}, False),
        ("contact_replied", {}, "contact_replied", {"text": "yes"}, True),
        ("webhook_received", {}, "tag_applied", {}, False),
        ("date_time", {}, "date_time", {}, False),
    ])
    def test_filters(self, trigger_type, filters, event_type, data, expected):
        config = TriggerConfig(trigger_type=trigger_type, trigger_config=filters)

        matched, reason = trigger_matches(config, event_type, data)

        assert matched is expected
        assert (reason is None) is expected

    def test_type_mismatch_reason(self):
        matched, reason = trigger_matches(TriggerConfig(trigger_type="tag_applied"), "contact_added")

        assert not matched
        assert reason == "Trigger type mismatch"


class TestLoggingMessagingClient:
    """Test cases for the log-only messaging client."""

    def test_history_is_bounded(self):
        client = LoggingMessagingClient(history=2)
        receipts = [client.send("+15550001", {"text": f"msg {i}"}) for i in range(5)]

        assert len(client.sent) == 2
        assert [m["content"]["text"] for m in client.sent] == ["msg 3", "msg 4"]
        assert client.sent[-1]["delivery_id"] == receipts[-1].delivery_id

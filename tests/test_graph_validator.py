"""Tests for GraphModel and GraphValidator."""

from conftest import delay, edge, goal, linear_workflow, make_workflow, message, trigger

from journey_engine.core.graph import GraphModel
from journey_engine.core.graph_validator import GraphValidator, lookup_path
from journey_engine.models.core import IssueSeverity


def messages(result):
    return [issue.message for issue in result.errors]


class TestGraphModel:
    """Test cases for the in-memory graph view."""

    def test_successor_prefers_named_handle(self):
        workflow = make_workflow(
            [trigger(), {"id": "check", "type": "condition",
                         "data": {"field": "score", "operator": "greater_than", "value": 10}},
             goal("yes"), goal("no")],
            [edge("start", "check"), edge("check", "yes", "true"), edge("check", "no", "false")],
        )
        graph = GraphModel(workflow)

        assert graph.successor("check", "true") == "yes"
        assert graph.successor("check", "false") == "no"
        assert graph.successor("check", "maybe") is None
        assert graph.successor("start") == "check"
        assert graph.successor("yes") is None

    def test_dangling_edges_are_kept_out_of_adjacency(self):
        workflow = make_workflow([trigger(), goal()], [edge("start", "goal"), edge("goal", "ghost")])
        graph = GraphModel(workflow)

        assert [e.target for e in graph.dangling_edges] == ["ghost"]
        assert graph.outgoing("goal") == ()

    def test_lookup_path_over_dicts_and_models(self):
        workflow = linear_workflow()
        assert lookup_path({"a": {"b": 3}}, "a.b") == 3
        assert lookup_path({"a": None}, "a.b") is None
        assert lookup_path(workflow.nodes[2].data, "amount") == 1


class TestGraphValidator:
    """Test cases for workflow validation rules."""

    def setup_method(self):
        self.validator = GraphValidator()

    def test_valid_linear_workflow(self):
        result = self.validator.validate(linear_workflow())
        assert result.is_valid
        assert result.errors == []

    def test_missing_trigger(self):
        workflow = make_workflow([message("m"), goal()], [edge("m", "goal")])
        result = self.validator.validate(workflow)

        assert not result.is_valid
        assert any(m.startswith("missing trigger") for m in messages(result))

    def test_multiple_triggers(self):
        workflow = make_workflow(
            [trigger("a"), trigger("b"), goal()],
            [edge("a", "goal"), edge("b", "goal")],
        )
        result = self.validator.validate(workflow)

        assert not result.is_valid
        assert any(m.startswith("multiple triggers") for m in messages(result))

    def test_required_fields_and_either_or(self):
        workflow = make_workflow(
            [trigger(), {"id": "m", "type": "message", "data": {}},
             {"id": "d", "type": "delay", "data": {"unit": "days"}}, goal()],
            [edge("start", "m"), edge("m", "d"), edge("d", "goal")],
        )
        result = self.validator.validate(workflow)

        assert "Required field missing: custom_message|template_id" in messages(result)
        assert "Required field missing: amount" in messages(result)

        template_only = make_workflow(
            [trigger(), {"id": "m", "type": "message", "data": {"template_id": "tpl-1"}}, goal()],
            [edge("start", "m"), edge("m", "goal")],
        )
        assert self.validator.validate(template_only).is_valid

    def test_edge_bounds(self):
        workflow = make_workflow(
            [trigger(), message("a"), message("b"), goal()],
            [edge("start", "a"), edge("start", "b"), edge("a", "goal"), edge("b", "goal"),
             edge("goal", "a")],
        )
        result = self.validator.validate(workflow)
        found = messages(result)

        assert "Node cannot have more than 1 outgoing connections" in found
        assert "Node cannot have more than 0 outgoing connections" in found

    def test_trigger_cannot_have_incoming_edges(self):
        workflow = make_workflow(
            [trigger(), message("m")],
            [edge("start", "m"), edge("m", "start")],
        )
        result = self.validator.validate(workflow)

        assert not result.is_valid
        assert any(
            issue.node_id == "start" and "incoming" in issue.message for issue in result.errors
        )

    def test_delay_requires_outgoing_connection(self):
        workflow = make_workflow([trigger(), delay("d")], [edge("start", "d")])
        result = self.validator.validate(workflow)

        assert "Node must have at least one outgoing connection" in messages(result)

    def test_condition_needs_true_and_false_branches(self):
        workflow = make_workflow(
            [trigger(), {"id": "c", "type": "condition",
                         "data": {"field": "tags", "operator": "contains", "value": "vip"}},
             goal("g1"), goal("g2")],
            [edge("start", "c"), edge("c", "g1", "true"), edge("c", "g2", "other")],
        )
        result = self.validator.validate(workflow)
        found = messages(result)

        assert "Condition node requires a 'false' branch" in found
        assert "Condition node has unexpected branch 'other'" in found

    def test_split_branches_need_edges(self):
        workflow = make_workflow(
            [trigger(), {"id": "s", "type": "split", "data": {"branches": [
                {"id": "a", "percentage": 50}, {"id": "b", "percentage": 50}]}},
             goal("ga")],
            [edge("start", "s"), edge("s", "ga", "a")],
        )
        result = self.validator.validate(workflow)

        assert "Split branch 'b' has no outgoing connection" in messages(result)

    def test_dangling_edge_is_an_error(self):
        workflow = make_workflow([trigger(), goal()], [edge("start", "goal"), edge("start", "nowhere")])
        result = self.validator.validate(workflow)

        assert any(
            issue.edge_id == "start-nowhere" and "unknown node" in issue.message
            for issue in result.errors
        )

    def test_unreachable_node_is_only_a_warning(self):
        workflow = make_workflow(
            [trigger(), goal(), message("orphan")],
            [edge("start", "goal")],
        )
        result = self.validator.validate(workflow)

        assert result.is_valid
        assert [w.node_id for w in result.warnings] == ["orphan"]
        assert result.warnings[0].severity == IssueSeverity.WARNING
        assert result.warnings[0].message.startswith("unreachable")

    def test_cycle_reachable_from_trigger(self):
        workflow = make_workflow(
            [trigger(), message("a"), delay("b")],
            [edge("start", "a"), edge("a", "b"), edge("b", "a")],
        )
        result = self.validator.validate(workflow)

        assert not result.is_valid
        assert any(m.startswith("circular dependency") for m in messages(result))

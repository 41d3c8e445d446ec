"""Tests for the routing resolver."""

from workflow.definitions import parse_chain_definition
from workflow.routing import NextActionType, RoutingResolver
from workflow.state import StepResult, StepStatus


def rule(field, value, action, target=None, rule_id="", **extra):
    return {
        "id": rule_id,
        "condition": {"field": field, "operator": "equals", "value": value},
        "action": action,
        "target": target,
        **extra,
    }


def build_chain(routing):
    return parse_chain_definition({
        "id": "router",
        "steps": [
            {"type": "module_call", "id": "check", "target": "echo", "operation": "run", "routing": routing},
            {"type": "module_call", "id": "middle", "target": "echo", "operation": "run"},
            {"type": "module_call", "id": "last", "target": "echo", "operation": "run"},
        ],
    })


def resolve(definition, step_id, namespace, status=StepStatus.COMPLETED):
    step = definition.steps[definition.index_of(step_id)]
    result = StepResult(step_id=step_id, status=status)
    action = RoutingResolver().resolve(step, result, definition, namespace)
    return action, result


# ─── Rule matching ───

class TestRuleMatching:
    def test_no_rules_continue(self):
        definition = build_chain([])
        action, result = resolve(definition, "check", {})
        assert action.type == NextActionType.CONTINUE
        assert action.next_index == 1
        assert not action.matched
        assert result.routing_evaluated is True
        assert result.routing_matched is False
        assert result.routing_action_taken == "continue"

    def test_last_step_stops(self):
        definition = build_chain([])
        action, result = resolve(definition, "last", {})
        assert action.type == NextActionType.STOP
        assert action.reason == "End of chain"
        assert result.routing_action_taken == "stop"

    def test_skip_to_step(self):
        definition = build_chain([rule("step_check_output.route", "skip", "skip_to_step", "last", "to-last")])
        action, result = resolve(definition, "check", {"step_check_output": {"route": "skip"}})
        assert action.type == NextActionType.GOTO_STEP
        assert action.next_index == 2
        assert action.rule_id == "to-last"
        assert result.routing_matched is True
        assert result.routing_rule_id == "to-last"
        assert result.routing_action_taken == "skip_to_step"

    def test_jump_to_chain(self):
        definition = build_chain([
            rule("step_check_output.route", "jump", "jump_to_chain", "other", input_mapping={"x": "{{ input.x }}"}),
        ])
        action, _ = resolve(definition, "check", {"step_check_output": {"route": "jump"}})
        assert action.type == NextActionType.INVOKE_SUB_CHAIN
        assert action.chain_id == "other"
        assert action.next_index == 1
        assert action.input_mapping == {"x": "{{ input.x }}"}

    def test_stop_chain(self):
        definition = build_chain([rule("step_check_output.route", "stop", "stop_chain")])
        action, result = resolve(definition, "check", {"step_check_output": {"route": "stop"}})
        assert action.type == NextActionType.STOP
        assert action.matched
        assert result.routing_action_taken == "stop_chain"

    def test_first_match_wins(self):
        definition = build_chain([
            rule("step_check_output.route", "x", "stop_chain", rule_id="first"),
            rule("step_check_output.route", "x", "skip_to_step", "last", "second"),
        ])
        action, result = resolve(definition, "check", {"step_check_output": {"route": "x"}})
        assert action.type == NextActionType.STOP
        assert result.routing_rule_id == "first"
        assert len(result.routing_trace) == 1

    def test_trace_records_every_evaluation(self):
        definition = build_chain([
            rule("step_check_output.route", "a", "stop_chain"),
            rule("step_check_output.route", "b", "skip_to_step", "last"),
        ])
        _, result = resolve(definition, "check", {"step_check_output": {"route": "b"}})
        assert result.routing_trace == [
            {"rule_id": "rule_0", "action": "stop_chain", "matched": False},
            {"rule_id": "rule_1", "action": "skip_to_step", "matched": True},
        ]


# ─── Failed steps ───

class TestRoutingOnFailure:
    def test_evaluated_for_failed_step(self):
        definition = build_chain([
            {"id": "recover", "condition": {"field": "step_check_output", "operator": "not_exists"},
             "action": "skip_to_step", "target": "last"},
        ])
        action, result = resolve(definition, "check", {}, status=StepStatus.FAILED)
        assert result.routing_evaluated is True
        assert action.type == NextActionType.GOTO_STEP
        assert action.step_id == "last"

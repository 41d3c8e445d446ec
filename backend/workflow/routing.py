"""Routing resolver.

After a step has run (successfully or not) its routing rules are checked
in declaration order and the first match decides what happens next:

- skip_to_step   jump forward to another step of the same chain
- jump_to_chain  run another chain, then carry on with the next step
- stop_chain     end the run here

With no match the run continues at the next index, or stops after the
last step. Every evaluation is written to the StepResult.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from workflow.conditions import ConditionEvaluator
from workflow.definitions import ChainDefinition, RoutingAction, StepBase
from workflow.state import StepResult

logger = structlog.get_logger(__name__)


class NextActionType(str, Enum):
    CONTINUE = "continue"
    GOTO_STEP = "goto_step"
    INVOKE_SUB_CHAIN = "invoke_sub_chain"
    STOP = "stop"


@dataclass
class NextAction:
    """What the chain runner should do after a step."""
    type: NextActionType
    next_index: Optional[int] = None
    step_id: Optional[str] = None
    chain_id: Optional[str] = None
    input_mapping: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    rule_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        """True when a routing rule (not the default) produced this action."""
        return self.rule_id is not None


class RoutingResolver:
    """Evaluates a step's routing rules into a NextAction."""

    def __init__(self, evaluator: ConditionEvaluator = None):
        self._evaluator = evaluator or ConditionEvaluator()

    def resolve(
        self,
        step: StepBase,
        result: StepResult,
        definition: ChainDefinition,
        namespace: dict,
    ) -> NextAction:
        current_index = definition.index_of(step.id)
        result.routing_evaluated = True
        result.routing_trace = []

        for position, rule in enumerate(step.routing):
            rule_id = rule.id or f"rule_{position}"
            matched = self._evaluator.evaluate(rule.condition, namespace)
            result.routing_trace.append({"rule_id": rule_id, "action": rule.action.value, "matched": matched})
            if not matched:
                continue

            result.routing_matched = True
            result.routing_rule_id = rule_id
            result.routing_action_taken = rule.action.value
            logger.info(
                "Routing rule matched",
                chain_id=definition.id,
                step_id=step.id,
                rule_id=rule_id,
                action=rule.action.value,
                target=rule.target,
            )

            if rule.action == RoutingAction.SKIP_TO_STEP:
                return NextAction(
                    type=NextActionType.GOTO_STEP,
                    next_index=definition.index_of(rule.target),
                    step_id=rule.target,
                    rule_id=rule_id,
                )
            if rule.action == RoutingAction.JUMP_TO_CHAIN:
                return NextAction(
                    type=NextActionType.INVOKE_SUB_CHAIN,
                    next_index=current_index + 1,
                    chain_id=rule.target,
                    input_mapping=dict(rule.input_mapping),
                    rule_id=rule_id,
                )
            return NextAction(
                type=NextActionType.STOP,
                reason=f"Stopped by routing rule '{rule_id}'",
                rule_id=rule_id,
            )

        if current_index + 1 >= len(definition.steps):
            result.routing_action_taken = NextActionType.STOP.value
            return NextAction(type=NextActionType.STOP, reason="End of chain")

        result.routing_action_taken = NextActionType.CONTINUE.value
        return NextAction(type=NextActionType.CONTINUE, next_index=current_index + 1)

"""Chain definition model.

A chain is an ordered list of steps. Each step is one of two tagged
variants, checked when the definition is loaded rather than when it runs:

    {
        "id": "enrich-order",
        "name": "Enrich order",
        "steps": [
            {
                "type": "module_call",
                "id": "fetch",
                "target": "crm",
                "operation": "get_customer",
                "params": {"customer_id": "{{ input.customer_id }}"},
                "retry_count": 2,
                "routing": [
                    {
                        "id": "vip",
                        "condition": {"field": "step_fetch_output.tier", "operator": "equals", "value": "vip"},
                        "action": "jump_to_chain",
                        "target": "vip-onboarding",
                        "input_mapping": {"customer": "{{ step_fetch_output }}"}
                    }
                ]
            },
            {
                "type": "chain_call",
                "id": "notify",
                "target_chain_id": "send-notification",
                "input_mapping": {"email": "{{ step_fetch_output.email }}"}
            }
        ],
        "output_template": {"customer": "{{ step_fetch_output }}"}
    }

Definitions are frozen once parsed so a running execution cannot
observe edits.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from app.config import get_settings
from core.exceptions import ChainNotFoundError, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_STEP_TIMEOUT = 300.0  # 5 minutes
MAX_STEP_TIMEOUT = 3600.0
DEFAULT_RETRY_COUNT = 3
MAX_RETRY_COUNT = 5
DEFAULT_RETRY_DELAY = 5.0
MAX_RETRY_DELAY = 60.0
MAX_CHAIN_TIMEOUT = 7200.0


# ─── Conditions ───────────────────────────────────────────────

class ConditionOperator(str, Enum):
    """Comparison operators available to leaf conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class Condition(BaseModel):
    """Leaf comparison: ``<value at field> <operator> <value>``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str = Field(min_length=1, description="Dotted path into execution variables")
    operator: ConditionOperator
    value: Any = None


class LogicGroup(BaseModel):
    """AND/OR group over conditions and nested groups."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    logic: Literal["AND", "OR"] = "AND"
    conditions: List[Union[Condition, "LogicGroup"]] = Field(default_factory=list)

    @field_validator("logic", mode="before")
    @classmethod
    def _normalize_logic(cls, value):
        return value.upper() if isinstance(value, str) else value


LogicGroup.model_rebuild()

ConditionLike = Union[Condition, LogicGroup]


# ─── Routing ──────────────────────────────────────────────────

class RoutingAction(str, Enum):
    """What a matched routing rule does."""
    SKIP_TO_STEP = "skip_to_step"
    JUMP_TO_CHAIN = "jump_to_chain"
    STOP_CHAIN = "stop_chain"


class RoutingRule(BaseModel):
    """Conditional branch evaluated after a step has run."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    condition: ConditionLike
    action: RoutingAction
    target: Optional[str] = None
    input_mapping: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_target(self):
        if self.action != RoutingAction.STOP_CHAIN and not self.target:
            raise ValueError(f"routing action '{self.action.value}' requires a target")
        return self


# ─── Steps ────────────────────────────────────────────────────

class StepBase(BaseModel):
    """Fields shared by every step variant."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=64)
    name: str = ""
    timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0, le=MAX_STEP_TIMEOUT)
    retry_count: int = Field(default=DEFAULT_RETRY_COUNT, ge=0, le=MAX_RETRY_COUNT)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0, le=MAX_RETRY_DELAY)
    continue_on_error: bool = False
    condition: Optional[ConditionLike] = None
    routing: List[RoutingRule] = Field(default_factory=list)

    @property
    def output_key(self) -> str:
        """Variable name under which this step's output is stored."""
        return f"step_{self.id}_output"


class ModuleCallStep(StepBase):
    """Calls an operation on an external module."""

    type: Literal["module_call"] = "module_call"
    target: str = Field(min_length=1)
    operation: str = Field(min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class ChainCallStep(StepBase):
    """Runs another chain and stores its result as this step's output."""

    type: Literal["chain_call"] = "chain_call"
    target_chain_id: str = Field(min_length=1)
    input_mapping: Dict[str, Any] = Field(default_factory=dict)


Step = Annotated[Union[ModuleCallStep, ChainCallStep], Field(discriminator="type")]


# ─── Chain ────────────────────────────────────────────────────

class ChainDefinition(BaseModel):
    """A named, ordered definition of steps with routing rules."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=64)
    name: str = ""
    description: str = ""
    steps: List[Step] = Field(default_factory=list)
    output_template: Optional[Dict[str, Any]] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=MAX_CHAIN_TIMEOUT)

    @model_validator(mode="after")
    def _check_steps(self):
        max_steps = get_settings().MAX_CHAIN_STEPS
        if not self.steps:
            raise ValueError("chain must contain at least one step")
        if len(self.steps) > max_steps:
            raise ValueError(f"chain has {len(self.steps)} steps, limit is {max_steps}")

        positions: Dict[str, int] = {}
        for index, step in enumerate(self.steps):
            if step.id in positions:
                raise ValueError(f"duplicate step id '{step.id}'")
            positions[step.id] = index

        for index, step in enumerate(self.steps):
            for rule in step.routing:
                if rule.action != RoutingAction.SKIP_TO_STEP:
                    continue
                target_index = positions.get(rule.target)
                if target_index is None:
                    raise ValueError(
                        f"step '{step.id}' routes to unknown step '{rule.target}'"
                    )
                # Forward-only keeps variables append-only and runs finite
                if target_index <= index:
                    raise ValueError(
                        f"step '{step.id}' routes backwards to '{rule.target}'"
                    )
        return self

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise ValidationError(f"Step '{step_id}' not found in chain '{self.id}'")

    def referenced_chain_ids(self) -> set:
        """Chain ids this definition may invoke (chain calls and jumps)."""
        refs = set()
        for step in self.steps:
            if isinstance(step, ChainCallStep):
                refs.add(step.target_chain_id)
            for rule in step.routing:
                if rule.action == RoutingAction.JUMP_TO_CHAIN:
                    refs.add(rule.target)
        return refs


def parse_chain_definition(data: Union[dict, ChainDefinition]) -> ChainDefinition:
    """Parse raw definition data, raising our ValidationError on failure."""
    if isinstance(data, ChainDefinition):
        return data
    try:
        return ChainDefinition.model_validate(data)
    except PydanticValidationError as e:
        chain_id = data.get("id", "?") if isinstance(data, dict) else "?"
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'chain'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid chain definition '{chain_id}': {errors}") from e


# ─── Registry ─────────────────────────────────────────────────

class ChainRegistry:
    """Catalog of chain definitions the engine can run.

    Cross-chain references (chain calls, jump_to_chain targets) are
    checked at registration time against the catalog plus the batch
    being loaded, so a broken reference never reaches execution.
    """

    def __init__(self):
        self._chains: Dict[str, ChainDefinition] = {}

    def register(self, definition: Union[dict, ChainDefinition]) -> ChainDefinition:
        """Register a single chain. Its references must already be known."""
        return self.load([definition])[0]

    def load(self, definitions: Iterable[Union[dict, ChainDefinition]]) -> List[ChainDefinition]:
        """Register a batch of chains atomically.

        Raises:
            ValidationError: If any definition is malformed or references
                a chain that is neither registered nor in the batch.
        """
        parsed = [parse_chain_definition(d) for d in definitions]
        known = set(self._chains) | {d.id for d in parsed}

        for definition in parsed:
            missing = definition.referenced_chain_ids() - known
            if missing:
                raise ValidationError(
                    f"Chain '{definition.id}' references unknown chain(s): {', '.join(sorted(missing))}"
                )

        for definition in parsed:
            self._chains[definition.id] = definition
            logger.info("Chain registered", chain_id=definition.id, steps=len(definition.steps))
        return parsed

    def load_directory(self, directory: Union[str, Path]) -> int:
        """Load every ``*.json`` file in a directory (one chain or a list per file)."""
        path = Path(directory)
        if not path.is_dir():
            logger.info("Chain directory not found, nothing loaded", path=str(path))
            return 0

        batch: list = []
        for file in sorted(path.glob("*.json")):
            try:
                content = json.loads(file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid JSON in {file.name}: {e}") from e
            batch.extend(content if isinstance(content, list) else [content])

        return len(self.load(batch))

    def get(self, chain_id: str) -> ChainDefinition:
        definition = self._chains.get(chain_id)
        if definition is None:
            raise ChainNotFoundError(chain_id)
        return definition

    def unregister(self, chain_id: str) -> None:
        self._chains.pop(chain_id, None)

    def list_ids(self) -> List[str]:
        return sorted(self._chains)

    def __contains__(self, chain_id: str) -> bool:
        return chain_id in self._chains

    def __len__(self) -> int:
        return len(self._chains)

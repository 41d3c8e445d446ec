"""Runtime state of chain executions.

Step and execution results, the per-execution context that accumulates
step outputs, and the cancellation token threaded through a run. All of
these serialize to plain JSON-compatible dicts for checkpoints and the
admin API.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_execution_id() -> str:
    """``exec-<base36 epoch ms>-<random hex>``, sortable by creation time."""
    return f"exec-{_base36(int(time.time() * 1000))}-{secrets.token_hex(6)}"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Statuses ─────────────────────────────────────────────────

class StepStatus(str, Enum):
    """Status of a single step execution."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Lifecycle of a whole chain execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


# ─── Results ──────────────────────────────────────────────────

@dataclass
class StepResult:
    """Result of executing (or skipping) a single step."""
    step_id: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: int = 0
    retry_count: int = 0
    retry_delays: list[float] = field(default_factory=list)
    skip_reason: Optional[str] = None
    # Routing trace
    routing_evaluated: bool = False
    routing_matched: bool = False
    routing_rule_id: Optional[str] = None
    routing_action_taken: Optional[str] = None
    routing_trace: list[dict] = field(default_factory=list)
    sub_chain_result: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
            "retry_delays": list(self.retry_delays),
            "skip_reason": self.skip_reason,
            "routing_evaluated": self.routing_evaluated,
            "routing_matched": self.routing_matched,
            "routing_rule_id": self.routing_rule_id,
            "routing_action_taken": self.routing_action_taken,
            "routing_trace": list(self.routing_trace),
            "sub_chain_result": self.sub_chain_result,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data.get("status", "pending")),
            output=data.get("output"),
            error=data.get("error"),
            error_type=data.get("error_type"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_ms=data.get("duration_ms", 0),
            retry_count=data.get("retry_count", 0),
            retry_delays=list(data.get("retry_delays", [])),
            skip_reason=data.get("skip_reason"),
            routing_evaluated=data.get("routing_evaluated", False),
            routing_matched=data.get("routing_matched", False),
            routing_rule_id=data.get("routing_rule_id"),
            routing_action_taken=data.get("routing_action_taken"),
            routing_trace=list(data.get("routing_trace", [])),
            sub_chain_result=data.get("sub_chain_result"),
        )


@dataclass
class ExecutionResult:
    """Outcome of one chain execution."""
    execution_id: str
    chain_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    step_results: list[StepResult] = field(default_factory=list)
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def get_step(self, step_id: str) -> Optional[StepResult]:
        for result in self.step_results:
            if result.step_id == step_id:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "chain_id": self.chain_id,
            "status": self.status.value,
            "success": self.success,
            "step_results": [r.to_dict() for r in self.step_results],
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_duration_ms": self.total_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionResult":
        return cls(
            execution_id=data["execution_id"],
            chain_id=data["chain_id"],
            status=ExecutionStatus(data.get("status", "pending")),
            step_results=[StepResult.from_dict(r) for r in data.get("step_results", [])],
            output=data.get("output"),
            error=data.get("error"),
            error_type=data.get("error_type"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            total_duration_ms=data.get("total_duration_ms", 0),
        )


# ─── Execution Context ────────────────────────────────────────

@dataclass
class ExecutionContext:
    """Per-execution state shared by the steps of one run.

    ``variables`` only grows: each completed step adds
    ``step_<id>_output`` once. Only the runner driving this execution
    writes to it.
    """

    execution_id: str
    chain_id: str
    input: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    trigger_id: Optional[str] = None
    depth: int = 0
    parent_execution_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def output_key(step_id: str) -> str:
        return f"step_{step_id}_output"

    def set_step_output(self, step_id: str, output: Any) -> None:
        """Record a step's output.

        Raises:
            ValueError: If the step already recorded an output in this run
        """
        key = self.output_key(step_id)
        if key in self.variables:
            raise ValueError(f"Variable '{key}' is already set for execution {self.execution_id}")
        self.variables[key] = output

    def namespace(self) -> dict[str, Any]:
        """Lookup root for conditions and templates."""
        return {"input": self.input, "env": self.env, **self.variables}

    def child(self, execution_id: str, chain_id: str, input: dict) -> "ExecutionContext":
        """Context for a nested sub-chain execution."""
        return ExecutionContext(
            execution_id=execution_id,
            chain_id=chain_id,
            input=input,
            env=dict(self.env),
            trigger_id=self.trigger_id,
            depth=self.depth + 1,
            parent_execution_id=self.execution_id,
        )

    def to_dict(self) -> dict:
        """Serialize context for checkpoint persistence."""
        return {
            "execution_id": self.execution_id,
            "chain_id": self.chain_id,
            "input": self.input,
            "variables": self.variables,
            "env": self.env,
            "trigger_id": self.trigger_id,
            "depth": self.depth,
            "parent_execution_id": self.parent_execution_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionContext":
        """Restore context from checkpoint."""
        return cls(
            execution_id=data["execution_id"],
            chain_id=data["chain_id"],
            input=data.get("input", {}),
            variables=data.get("variables", {}),
            env=data.get("env", {}),
            trigger_id=data.get("trigger_id"),
            depth=data.get("depth", 0),
            parent_execution_id=data.get("parent_execution_id"),
            metadata=data.get("metadata", {}),
        )


# ─── Cancellation ─────────────────────────────────────────────

class CancellationToken:
    """Execution-level cancellation signal.

    The same token is shared by an execution and all of its sub-chains.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

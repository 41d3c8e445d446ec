"""Execution and circuit breaker schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ExecutionCreate(BaseModel):
    """Trigger input: request to run a chain."""

    chain_id: str = Field(description="ID of the chain to execute")
    trigger_id: Optional[str] = Field(
        default=None,
        description="Chain instance id; executions sharing it never run concurrently",
    )
    input: Dict[str, Any] = Field(default_factory=dict, description="Chain input payload")
    env: Dict[str, Any] = Field(default_factory=dict, description="Environment values visible to templates")


class ExecutionResponse(BaseModel):
    """Execution summary."""

    execution_id: str = Field(description="Execution ID")
    chain_id: str = Field(description="Chain ID")
    trigger_id: Optional[str] = Field(default=None, description="Trigger (chain instance) ID")
    status: str = Field(description="pending, running, completed, failed, cancelled or timeout")
    resumed: bool = Field(default=False, description="Whether the run was resumed from a checkpoint")
    submitted_at: Optional[str] = Field(default=None, description="Submission timestamp")
    started_at: Optional[str] = Field(default=None, description="Execution start timestamp")
    completed_at: Optional[str] = Field(default=None, description="Execution completion timestamp")
    error: Optional[str] = Field(default=None, description="Error message if execution failed")


class ExecutionDetailResponse(ExecutionResponse):
    """Execution summary plus live progress or the final result."""

    progress: Optional[Dict[str, Any]] = Field(default=None, description="Live progress while running")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Final ExecutionResult")


class ExecutionListResponse(BaseModel):
    """List of known executions, newest first."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Number of executions returned")


class CircuitBreakerResponse(BaseModel):
    """Circuit breaker state for one dependency key."""

    key: str
    state: str
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    half_open_successes: int = 0
    probe_in_flight: bool = False
    last_error: Optional[str] = None

"""FastAPI dependency injection functions."""

from fastapi import Depends, HTTPException, Request, status

from app.runtime import ChainRuntime
from core.circuit_breaker import CircuitBreakerRegistry
from workflow.definitions import ChainRegistry
from workflow.recovery import RecoveryService
from worker.supervisor import ExecutionSupervisor


def get_runtime(request: Request) -> ChainRuntime:
    """Runtime attached to the application at startup."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Execution runtime not initialized",
        )
    return runtime


def get_supervisor(runtime: ChainRuntime = Depends(get_runtime)) -> ExecutionSupervisor:
    return runtime.supervisor


def get_breakers(runtime: ChainRuntime = Depends(get_runtime)) -> CircuitBreakerRegistry:
    return runtime.breakers


def get_chains(runtime: ChainRuntime = Depends(get_runtime)) -> ChainRegistry:
    return runtime.chains


def get_recovery_service(runtime: ChainRuntime = Depends(get_runtime)) -> RecoveryService:
    return runtime.recovery

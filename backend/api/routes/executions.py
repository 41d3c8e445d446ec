"""Chain execution submission, inspection and cancellation endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status
from typing import Optional
import structlog

from api.schemas.common import MessageResponse
from api.schemas.execution import (
    ExecutionCreate,
    ExecutionDetailResponse,
    ExecutionListResponse,
    ExecutionResponse,
)
from app.dependencies import get_chains, get_recovery_service, get_supervisor
from core.exceptions import ChainNotFoundError, ExecutionNotFoundError
from workflow.definitions import ChainRegistry
from workflow.recovery import RecoveryService
from workflow.state import ExecutionStatus
from worker.supervisor import ExecutionRequest, ExecutionSupervisor

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["executions"])


@router.get("/", response_model=ExecutionListResponse)
async def list_executions(
    exec_status: Optional[ExecutionStatus] = Query(None, alias="status", description="Filter by execution status"),
    limit: int = Query(100, ge=1, le=500),
    supervisor: ExecutionSupervisor = Depends(get_supervisor),
) -> ExecutionListResponse:
    """
    List known executions, newest first.
    """
    executions = supervisor.list_executions(status=exec_status, limit=limit)
    return ExecutionListResponse(
        executions=[ExecutionResponse(**e) for e in executions],
        total=len(executions),
    )


@router.post("/", response_model=ExecutionResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def submit_execution(
    body: ExecutionCreate,
    supervisor: ExecutionSupervisor = Depends(get_supervisor),
    chains: ChainRegistry = Depends(get_chains),
) -> ExecutionResponse:
    """
    Submit trigger input for a chain. The execution is queued and runs
    once no other execution of the same trigger is active.
    """
    if body.chain_id not in chains:
        raise ChainNotFoundError(body.chain_id)

    handle = supervisor.submit(ExecutionRequest(
        chain_id=body.chain_id,
        input=body.input,
        env=body.env,
        trigger_id=body.trigger_id,
    ))
    return ExecutionResponse(**handle.to_dict())


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    supervisor: ExecutionSupervisor = Depends(get_supervisor),
) -> ExecutionDetailResponse:
    """
    Get execution details, including live step progress or the final result.
    """
    detail = supervisor.get_execution(execution_id)
    if detail is None:
        raise ExecutionNotFoundError(execution_id)
    return ExecutionDetailResponse(**detail)


@router.post("/{execution_id}/cancel", response_model=MessageResponse)
async def cancel_execution(
    execution_id: str,
    supervisor: ExecutionSupervisor = Depends(get_supervisor),
) -> MessageResponse:
    """
    Cancel a running or pending execution.
    """
    handle = supervisor.get_handle(execution_id)
    if handle is None:
        raise ExecutionNotFoundError(execution_id)

    if not supervisor.cancel(execution_id):
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot cancel execution in '{handle.status.value}' status",
        )

    return MessageResponse(message=f"Execution {execution_id} cancellation requested")


recovery_router = APIRouter(tags=["recovery"])


@recovery_router.get("/")
async def get_recovery_log(recovery: RecoveryService = Depends(get_recovery_service)) -> dict:
    """
    Outcome of startup recovery for each checkpoint found.
    """
    log = recovery.get_recovery_log()
    return {
        "entries": log,
        "recovered": sum(1 for e in log if e["recovered"]),
        "needs_manual_restart": sum(1 for e in log if e["needs_manual_restart"]),
    }

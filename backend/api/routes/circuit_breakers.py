"""Circuit breaker inspection and reset endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status as http_status
from typing import Dict

from api.schemas.common import MessageResponse
from api.schemas.execution import CircuitBreakerResponse
from app.dependencies import get_breakers
from core.circuit_breaker import CircuitBreakerRegistry

router = APIRouter(tags=["circuit-breakers"])


@router.get("/", response_model=Dict[str, CircuitBreakerResponse])
async def list_circuit_breakers(
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> Dict[str, CircuitBreakerResponse]:
    """
    State of every dependency breaker seen so far.
    """
    return {key: CircuitBreakerResponse(**state) for key, state in breakers.snapshot().items()}


@router.get("/{key}", response_model=CircuitBreakerResponse)
async def get_circuit_breaker(
    key: str,
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> CircuitBreakerResponse:
    state = breakers.get_state(key)
    if state is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"No circuit breaker for '{key}'",
        )
    return CircuitBreakerResponse(**state.to_dict())


@router.post("/{key}/reset", response_model=MessageResponse)
async def reset_circuit_breaker(
    key: str,
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> MessageResponse:
    """
    Force a breaker back to closed.
    """
    if not breakers.reset(key):
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"No circuit breaker for '{key}'",
        )
    return MessageResponse(message=f"Circuit breaker '{key}' reset")

"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import circuit_breakers, executions, health

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Executions
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Circuit breakers
api_v1_router.include_router(
    circuit_breakers.router,
    prefix="/circuit-breakers",
    tags=["Circuit Breakers"],
)

# Startup recovery log
api_v1_router.include_router(
    executions.recovery_router,
    prefix="/recovery",
    tags=["Recovery"],
)

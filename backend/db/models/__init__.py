"""Database models for the chain execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.execution_state import ExecutionCheckpointModel

__all__ = [
    "ExecutionCheckpointModel",
]

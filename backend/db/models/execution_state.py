"""
Execution checkpoint persistence model.

One row per in-flight execution, overwritten after every committed step
and removed when the execution reaches a terminal status. The payload is
stored encrypted; only the execution id and digest are in clear text.
"""

from sqlalchemy import Column, String, Text

from db.base import BaseModel


class ExecutionCheckpointModel(BaseModel):
    """
    Persisted (encrypted) checkpoint.

    Used for recovery after crash/restart.
    """

    __tablename__ = "execution_checkpoints"

    execution_id = Column(String(64), unique=True, nullable=False, index=True)
    encrypted_payload = Column(Text, nullable=False)
    integrity_digest = Column(String(64), nullable=False)

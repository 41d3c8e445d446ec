"""
Execution Recovery Service.

Detects and resumes executions interrupted by a crash, restart or
unexpected shutdown.

Recovery flow:
1. On startup, list every stored checkpoint
2. Load and verify each one (decryption + integrity digest)
3. Checkpoints of executions that were still running are re-submitted
   to the supervisor, resuming at their next step index
4. Checkpoints that fail verification are left in place and reported as
   needing a manual restart; they are never resumed

Resuming is idempotent: an execution that is already pending or running
in this process is not submitted a second time.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from core.exceptions import CheckpointIntegrityError
from workflow.checkpoint import CheckpointManager

logger = structlog.get_logger(__name__)


class RecoveryResult:
    """Result of a recovery attempt for a single execution."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.recovered: bool = False
        self.needs_manual_restart: bool = False
        self.chain_id: Optional[str] = None
        self.resume_from_step: int = 0
        self.completed_steps_count: int = 0
        self.status: Optional[str] = None
        self.error: Optional[str] = None
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "chain_id": self.chain_id,
            "recovered": self.recovered,
            "needs_manual_restart": self.needs_manual_restart,
            "resume_from_step": self.resume_from_step,
            "completed_steps_count": self.completed_steps_count,
            "status": self.status,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RecoveryService:
    """
    Handles recovery of interrupted executions on startup.

    Integrates with CheckpointManager to restore state
    and with the supervisor to resume chains.
    """

    def __init__(self, checkpoint_manager: CheckpointManager, supervisor):
        self.checkpoint_manager = checkpoint_manager
        self.supervisor = supervisor
        self._recovery_log: List[RecoveryResult] = []

    async def recover_execution(self, execution_id: str) -> RecoveryResult:
        """Attempt to recover a single interrupted execution."""
        from worker.supervisor import ExecutionRequest

        result = RecoveryResult(execution_id)

        try:
            checkpoint = await self.checkpoint_manager.load(execution_id)
        except CheckpointIntegrityError as e:
            result.needs_manual_restart = True
            result.error = e.message
            logger.error("Checkpoint rejected, manual restart required", execution_id=execution_id, reason=e.reason)
            self._recovery_log.append(result)
            return result

        if checkpoint is None:
            result.error = "No checkpoint found"
            logger.warning("No checkpoint found for recovery", execution_id=execution_id)
            self._recovery_log.append(result)
            return result

        result.chain_id = checkpoint.chain_id
        result.status = checkpoint.status.value
        result.resume_from_step = checkpoint.next_index
        result.completed_steps_count = len(checkpoint.results)

        if not checkpoint.can_resume:
            result.error = f"Execution in non-resumable state: {checkpoint.status.value}"
            logger.info("Execution cannot be resumed", execution_id=execution_id, status=checkpoint.status.value)
            self._recovery_log.append(result)
            return result

        existing = self.supervisor.get_handle(execution_id)
        if existing is not None and not existing.done:
            result.error = "Execution already active"
            logger.info("Execution already active, not resubmitted", execution_id=execution_id)
            self._recovery_log.append(result)
            return result

        self.supervisor.submit(ExecutionRequest.from_checkpoint(checkpoint))
        result.recovered = True
        logger.info(
            "Execution recovered",
            execution_id=execution_id,
            chain_id=checkpoint.chain_id,
            resume_from=checkpoint.next_index,
            completed=len(checkpoint.results),
        )

        self._recovery_log.append(result)
        return result

    async def recover_all(self) -> List[RecoveryResult]:
        """
        Scan and recover all interrupted executions.

        Called on application startup.
        """
        logger.info("Starting execution recovery scan...")

        execution_ids = await self.checkpoint_manager.list()
        if not execution_ids:
            logger.info("No interrupted executions found")
            return []

        results = [await self.recover_execution(eid) for eid in execution_ids]

        logger.info(
            "Recovery scan complete",
            total=len(results),
            recovered=sum(1 for r in results if r.recovered),
            manual_restart=sum(1 for r in results if r.needs_manual_restart),
        )
        return results

    def get_recovery_log(self) -> List[dict]:
        """Get the recovery log for the admin surface."""
        return [r.to_dict() for r in self._recovery_log]

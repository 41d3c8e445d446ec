"""Chain Execution Engine: step-by-step chain runner.

Takes a chain definition (an ordered list of steps) and drives it to a
terminal status, handling:

- Conditional step skipping (``condition`` guard per step)
- Module calls with timeout, retry and circuit breaking (StepExecutor)
- Routing after every step: skip ahead, jump into another chain, stop
- Sub-chain invocation with bounded recursion depth
- Chain-level timeout and cooperative cancellation
- Checkpoint after every committed step, resume from the next index

Execution states:

    pending -> running -> completed | failed | cancelled | timeout

Steps within one execution never run concurrently: step N+1 starts only
after step N's result, output and checkpoint are committed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Optional

import structlog

from core.exceptions import ChainEngineError, MaxRecursionDepthExceeded, TERMINAL_ERRORS
from workflow.checkpoint import Checkpoint, CheckpointManager
from workflow.conditions import ConditionEvaluator
from workflow.definitions import ChainCallStep, ChainDefinition, ChainRegistry
from workflow.expressions import render_mapping
from workflow.routing import NextActionType, RoutingResolver
from workflow.state import (
    CancellationToken,
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    StepResult,
    StepStatus,
    generate_execution_id,
    utcnow_iso,
)
from workflow.step_executor import StepExecutor

logger = structlog.get_logger(__name__)

StepCallback = Callable[[ExecutionContext, StepResult], Awaitable[None]]


class _StopRun(Exception):
    """Ends the step loop with a final status (internal control flow)."""

    def __init__(self, status: ExecutionStatus, error: Optional[str] = None, error_type: Optional[str] = None):
        self.status = status
        self.error = error
        self.error_type = error_type
        super().__init__(error or status.value)


@dataclass
class _Run:
    """Mutable bookkeeping for one in-flight execution (top-level or nested)."""
    context: ExecutionContext
    result: ExecutionResult
    token: CancellationToken
    next_index: int = 0
    current_step_id: Optional[str] = None
    top_level: bool = True
    started_monotonic: float = field(default_factory=time.monotonic)


# ─── Chain Engine ─────────────────────────────────────────────

class ChainEngine:
    """Runs chain executions.

    Usage:
        engine = ChainEngine(chains, step_executor, checkpoint_manager)
        result = await engine.execute("enrich-order", input={"customer_id": 7})
    """

    def __init__(
        self,
        chains: ChainRegistry,
        step_executor: StepExecutor,
        checkpoint_manager: Optional[CheckpointManager] = None,
        resolver: Optional[RoutingResolver] = None,
        max_recursion_depth: int = 10,
        default_timeout: float = 1800.0,
        on_step_complete: Optional[StepCallback] = None,
    ):
        self.chains = chains
        self.step_executor = step_executor
        self.checkpoint_manager = checkpoint_manager
        self.resolver = resolver or RoutingResolver()
        self.max_recursion_depth = max_recursion_depth
        self.default_timeout = default_timeout
        self.on_step_complete = on_step_complete
        self._evaluator = ConditionEvaluator()
        self._running: dict[str, _Run] = {}

    # ─── Public API ───────────────────────────────────────────

    async def execute(
        self,
        chain_id: str,
        input: Optional[dict] = None,
        env: Optional[dict] = None,
        *,
        execution_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Run a chain from its first step.

        Never raises for execution failures: the outcome, including
        unknown chains, is reported on the returned ExecutionResult.
        """
        context = ExecutionContext(
            execution_id=execution_id or generate_execution_id(),
            chain_id=chain_id,
            input=dict(input or {}),
            env=dict(env or {}),
            trigger_id=trigger_id,
        )
        return await self._execute_top_level(context, 0, [], token)

    async def resume(self, checkpoint: Checkpoint, token: Optional[CancellationToken] = None) -> ExecutionResult:
        """Continue an interrupted execution at the checkpointed step index.

        Steps already recorded in the checkpoint are not run again.
        """
        logger.info(
            "Resuming execution",
            execution_id=checkpoint.execution_id,
            chain_id=checkpoint.chain_id,
            next_index=checkpoint.next_index,
            completed_steps=len(checkpoint.results),
        )
        return await self._execute_top_level(
            checkpoint.context,
            checkpoint.next_index,
            list(checkpoint.results),
            token,
            started_at=checkpoint.started_at,
        )

    def cancel_execution(self, execution_id: str, reason: str = "Cancelled by operator") -> bool:
        """Cancel a running execution.

        Returns:
            True if cancelled, False if not found
        """
        run = self._running.get(execution_id)
        if run is None:
            return False
        run.token.cancel(reason)
        logger.info("Execution marked for cancellation", execution_id=execution_id, reason=reason)
        return True

    def get_running_executions(self) -> dict[str, dict]:
        """Status of all in-flight top-level executions."""
        return {eid: self._describe(run) for eid, run in self._running.items()}

    def get_execution(self, execution_id: str) -> Optional[dict]:
        run = self._running.get(execution_id)
        if run is None:
            return None
        detail = self._describe(run)
        detail["step_results"] = [r.to_dict() for r in run.result.step_results]
        detail["variables"] = dict(run.context.variables)
        return detail

    # ─── Top-level execution ──────────────────────────────────

    async def _execute_top_level(
        self,
        context: ExecutionContext,
        start_index: int,
        results: list[StepResult],
        token: Optional[CancellationToken],
        started_at: Optional[str] = None,
    ) -> ExecutionResult:
        token = token or CancellationToken()
        result = ExecutionResult(
            execution_id=context.execution_id,
            chain_id=context.chain_id,
            status=ExecutionStatus.RUNNING,
            step_results=results,
            started_at=started_at or utcnow_iso(),
        )
        run = _Run(context=context, result=result, token=token, next_index=start_index)
        self._running[context.execution_id] = run

        log = logger.bind(execution_id=context.execution_id, chain_id=context.chain_id)
        log.info("Execution started", start_index=start_index, trigger_id=context.trigger_id)

        try:
            definition = self.chains.get(context.chain_id)
            if token.cancelled:
                raise _StopRun(ExecutionStatus.CANCELLED, token.reason)

            await self._save_checkpoint(run)
            timeout = definition.timeout or self.default_timeout
            interrupted = await self._supervise(self._run_loop(definition, run), token, timeout)
            if interrupted is not None:
                raise _StopRun(interrupted, self._interruption_message(interrupted, token, timeout))
            self._finish(run, definition)

        except _StopRun as stop:
            self._set_outcome(result, stop.status, stop.error, stop.error_type)
        except ChainEngineError as e:
            self._set_outcome(result, ExecutionStatus.FAILED, e.message, type(e).__name__)
        except Exception as e:
            log.exception("Execution crashed", error=str(e))
            self._set_outcome(result, ExecutionStatus.FAILED, str(e), type(e).__name__)
        finally:
            self._running.pop(context.execution_id, None)
            result.completed_at = utcnow_iso()
            result.total_duration_ms = int((time.monotonic() - run.started_monotonic) * 1000)

        await self._finalize_checkpoint(run)
        log.info(
            "Execution finished",
            status=result.status.value,
            steps=len(result.step_results),
            duration_ms=result.total_duration_ms,
            error=result.error,
        )
        return result

    @staticmethod
    def _interruption_message(status: ExecutionStatus, token: CancellationToken, timeout: Optional[float]) -> str:
        if status == ExecutionStatus.CANCELLED:
            return token.reason or "Cancelled"
        return f"Chain timed out after {timeout}s"

    @staticmethod
    def _set_outcome(result: ExecutionResult, status: ExecutionStatus, error: Optional[str], error_type: Optional[str]) -> None:
        result.status = status
        result.error = error
        result.error_type = error_type

    def _finish(self, run: _Run, definition: ChainDefinition) -> None:
        """Mark a loop that ran to the end as completed and project its output."""
        run.result.status = ExecutionStatus.COMPLETED
        if definition.output_template:
            run.result.output = render_mapping(definition.output_template, run.context.namespace())
            return
        completed = [r for r in run.result.step_results if r.status == StepStatus.COMPLETED]
        run.result.output = completed[-1].output if completed else None

    async def _supervise(
        self,
        loop: Coroutine,
        token: CancellationToken,
        timeout: Optional[float],
    ) -> Optional[ExecutionStatus]:
        """Run the step loop against the chain timeout and the cancellation token.

        Returns None when the loop finished on its own, otherwise the
        interrupting status (cancelled or timeout). Exceptions raised by
        the loop propagate.
        """
        loop_task = asyncio.ensure_future(loop)
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {loop_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            loop_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if loop_task in done and not loop_task.cancelled():
            if loop_task.exception() is None:
                return None
            if not token.cancelled:
                loop_task.result()
            # A step failing because cancellation interrupted it reports as cancelled
            return ExecutionStatus.CANCELLED

        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)
        return ExecutionStatus.CANCELLED if token.cancelled else ExecutionStatus.TIMEOUT

    # ─── Step loop ────────────────────────────────────────────

    async def _run_loop(self, definition: ChainDefinition, run: _Run) -> None:
        """Drive steps from ``run.next_index`` until the chain ends.

        Raises:
            _StopRun: On a failed step that ends the chain
            MaxRecursionDepthExceeded / ChainNotFoundError: terminal errors
        """
        context = run.context
        if context.depth > self.max_recursion_depth:
            raise MaxRecursionDepthExceeded(context.depth, self.max_recursion_depth)

        steps = definition.steps
        while run.next_index is not None and run.next_index < len(steps):
            step = steps[run.next_index]
            run.current_step_id = step.id

            if step.condition is not None and not self._evaluator.evaluate(step.condition, context.namespace()):
                now = utcnow_iso()
                step_result = StepResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    started_at=now,
                    completed_at=now,
                    skip_reason="condition not met",
                )
                logger.info("Step skipped", execution_id=context.execution_id, step_id=step.id)
                await self._commit_step(run, step_result, run.next_index + 1)
                continue

            try:
                if isinstance(step, ChainCallStep):
                    step_result = await self._run_chain_call(step, run)
                else:
                    step_result = await self.step_executor.run_step(step, context, run.token)
            except TERMINAL_ERRORS as e:
                step_result = self._failed_result(step.id, e)
                await self._commit_step(run, step_result, None)
                raise

            if step_result.status == StepStatus.COMPLETED:
                context.set_step_output(step.id, step_result.output)

            action = self.resolver.resolve(step, step_result, definition, context.namespace())
            redirected = action.matched and action.type in (NextActionType.GOTO_STEP, NextActionType.INVOKE_SUB_CHAIN)
            failed = step_result.status == StepStatus.FAILED

            if failed and not step.continue_on_error and not redirected:
                await self._commit_step(run, step_result, None)
                raise _StopRun(
                    ExecutionStatus.FAILED,
                    f"Step '{step.id}' failed: {step_result.error}",
                    step_result.error_type,
                )

            if action.type == NextActionType.INVOKE_SUB_CHAIN:
                child_input = render_mapping(action.input_mapping, context.namespace())
                try:
                    sub_result = await self._run_nested(action.chain_id, child_input, run)
                except TERMINAL_ERRORS:
                    await self._commit_step(run, step_result, None)
                    raise
                step_result.sub_chain_result = sub_result.to_dict()
                if not sub_result.success and not step.continue_on_error:
                    await self._commit_step(run, step_result, None)
                    raise _StopRun(
                        ExecutionStatus.FAILED,
                        f"Sub-chain '{action.chain_id}' {sub_result.status.value}: {sub_result.error}",
                        sub_result.error_type,
                    )

            if action.type == NextActionType.STOP:
                await self._commit_step(run, step_result, None)
                logger.info("Chain stopped", execution_id=context.execution_id, step_id=step.id, reason=action.reason)
                return

            await self._commit_step(run, step_result, action.next_index)

    async def _commit_step(self, run: _Run, step_result: StepResult, next_index: Optional[int]) -> None:
        """Record a finished step, notify listeners, then checkpoint."""
        run.result.step_results.append(step_result)
        run.next_index = next_index
        run.current_step_id = None

        if not run.top_level:
            return

        if self.on_step_complete:
            try:
                await self.on_step_complete(run.context, step_result)
            except Exception as e:
                logger.warning("on_step_complete callback failed", error=str(e))

        if run.next_index is not None:
            await self._save_checkpoint(run)

    @staticmethod
    def _failed_result(step_id: str, error: Exception) -> StepResult:
        now = utcnow_iso()
        return StepResult(
            step_id=step_id,
            status=StepStatus.FAILED,
            error=getattr(error, "message", str(error)),
            error_type=type(error).__name__,
            started_at=now,
            completed_at=now,
        )

    # ─── Sub-chains ───────────────────────────────────────────

    async def _run_chain_call(self, step: ChainCallStep, run: _Run) -> StepResult:
        """Run a chain-call step; its output is the sub-chain's output."""
        started = time.monotonic()
        step_result = StepResult(step_id=step.id, status=StepStatus.RUNNING, started_at=utcnow_iso())
        child_input = render_mapping(step.input_mapping, run.context.namespace())

        sub_result = await self._run_nested(step.target_chain_id, child_input, run)

        step_result.sub_chain_result = sub_result.to_dict()
        if sub_result.success:
            step_result.status = StepStatus.COMPLETED
            step_result.output = sub_result.output
        else:
            step_result.status = StepStatus.FAILED
            step_result.error = f"Sub-chain '{step.target_chain_id}' {sub_result.status.value}: {sub_result.error}"
            step_result.error_type = sub_result.error_type or "SubChainFailed"
        step_result.completed_at = utcnow_iso()
        step_result.duration_ms = int((time.monotonic() - started) * 1000)
        return step_result

    async def _run_nested(self, chain_id: str, child_input: Any, parent: _Run) -> ExecutionResult:
        """Execute a chain inline on behalf of a parent execution.

        Nested executions share the parent's cancellation token, are not
        checkpointed on their own and do not appear in the running table.

        Raises:
            ChainNotFoundError / MaxRecursionDepthExceeded
        """
        definition = self.chains.get(chain_id)
        context = parent.context.child(
            generate_execution_id(),
            chain_id,
            child_input if isinstance(child_input, dict) else {"value": child_input},
        )
        result = ExecutionResult(
            execution_id=context.execution_id,
            chain_id=chain_id,
            status=ExecutionStatus.RUNNING,
            started_at=utcnow_iso(),
        )
        run = _Run(context=context, result=result, token=parent.token, top_level=False)
        logger.info(
            "Sub-chain started",
            parent_execution_id=parent.context.execution_id,
            execution_id=context.execution_id,
            chain_id=chain_id,
            depth=context.depth,
        )

        try:
            interrupted = await self._supervise(self._run_loop(definition, run), parent.token, definition.timeout)
            if interrupted is not None:
                raise _StopRun(interrupted, self._interruption_message(interrupted, parent.token, definition.timeout))
            self._finish(run, definition)
        except _StopRun as stop:
            self._set_outcome(result, stop.status, stop.error, stop.error_type)
        finally:
            result.completed_at = utcnow_iso()
            result.total_duration_ms = int((time.monotonic() - run.started_monotonic) * 1000)

        return result

    # ─── Checkpoints ──────────────────────────────────────────

    async def _save_checkpoint(self, run: _Run, status: ExecutionStatus = ExecutionStatus.RUNNING) -> None:
        if not self.checkpoint_manager or not run.top_level:
            return
        try:
            await self.checkpoint_manager.save(
                run.context.execution_id,
                run.context,
                run.next_index if run.next_index is not None else len(run.result.step_results),
                run.result.step_results,
                status=status,
                started_at=run.result.started_at,
            )
        except Exception as e:
            logger.warning("Checkpoint save failed", execution_id=run.context.execution_id, error=str(e))

    async def _finalize_checkpoint(self, run: _Run) -> None:
        """Drop the checkpoint of a finished run; keep cancelled ones as a record."""
        if not self.checkpoint_manager:
            return
        if run.result.status == ExecutionStatus.CANCELLED:
            await self._save_checkpoint(run, status=ExecutionStatus.CANCELLED)
            return
        try:
            await self.checkpoint_manager.delete(run.context.execution_id)
        except Exception as e:
            logger.warning("Checkpoint delete failed", execution_id=run.context.execution_id, error=str(e))

    # ─── Introspection ────────────────────────────────────────

    @staticmethod
    def _describe(run: _Run) -> dict:
        results = run.result.step_results
        return {
            "execution_id": run.context.execution_id,
            "chain_id": run.context.chain_id,
            "trigger_id": run.context.trigger_id,
            "status": run.result.status.value,
            "started_at": run.result.started_at,
            "current_step": run.current_step_id,
            "next_index": run.next_index,
            "steps_completed": sum(1 for r in results if r.status == StepStatus.COMPLETED),
            "steps_failed": sum(1 for r in results if r.status == StepStatus.FAILED),
            "steps_skipped": sum(1 for r in results if r.status == StepStatus.SKIPPED),
            "cancel_requested": run.token.cancelled,
        }

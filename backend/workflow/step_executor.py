"""Step invoker and retry controller for module-call steps.

One call to ``run_step`` produces exactly one StepResult:

1. params are rendered against the execution namespace
2. the circuit breaker for the step's target admits (or rejects) the attempt
3. the module is dispatched under the step timeout
4. the outcome is reported to the breaker
5. retryable failures are retried with exponential backoff

Retryable errors never escape; exhaustion yields a ``failed`` result.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from core.circuit_breaker import CircuitBreakerRegistry
from core.exceptions import ExternalCallError, StepTimeoutError, ValidationError
from modules.base_module import ModuleCall
from modules.registry import ModuleRegistry
from workflow.definitions import ModuleCallStep
from workflow.expressions import render_mapping
from workflow.retry_strategies import RetryStrategy, execute_with_retry
from workflow.state import CancellationToken, ExecutionContext, StepResult, StepStatus, utcnow_iso

logger = structlog.get_logger(__name__)


class StepExecutor:
    """Executes module-call steps through the breaker, timeout and retry policy."""

    def __init__(
        self,
        modules: ModuleRegistry,
        breakers: CircuitBreakerRegistry,
        max_retries: int = 5,
        max_retry_delay: float = 60.0,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.modules = modules
        self.breakers = breakers
        self.max_retries = max_retries
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep

    async def run_step(
        self,
        step: ModuleCallStep,
        context: ExecutionContext,
        token: Optional[CancellationToken] = None,
    ) -> StepResult:
        """Execute a module-call step.

        Args:
            step: Step definition
            context: Execution context (read-only here)
            token: Cancellation token; no new attempt starts once it fires

        Returns:
            StepResult with output or error
        """
        started = time.monotonic()
        result = StepResult(step_id=step.id, status=StepStatus.RUNNING, started_at=utcnow_iso())
        strategy = RetryStrategy.for_step(step, self.max_retries, self.max_retry_delay)
        attempts = 0

        call = ModuleCall(
            target=step.target,
            operation=step.operation,
            params=render_mapping(step.params, context.namespace()),
            timeout_ms=int(step.timeout * 1000),
            env=dict(context.env),
            execution_id=context.execution_id,
            step_id=step.id,
        )

        async def attempt():
            nonlocal attempts
            if token is not None and token.cancelled:
                raise asyncio.CancelledError()
            module = self.modules.get(step.target)
            if module is None:
                raise ValidationError(f"Unknown module target '{step.target}'")

            await self.breakers.acquire(step.target)
            attempts += 1
            try:
                response = await asyncio.wait_for(module.run(call), timeout=step.timeout)
            except asyncio.TimeoutError:
                await self.breakers.record_failure(step.target, f"timeout after {step.timeout}s")
                raise StepTimeoutError(step.id, step.timeout) from None
            except asyncio.CancelledError:
                self.breakers.release(step.target)
                raise
            except Exception as e:
                await self.breakers.record_failure(step.target, str(e))
                if isinstance(e, ExternalCallError):
                    raise
                raise ExternalCallError(f"{type(e).__name__}: {e}", target=step.target) from e

            if not response.success:
                error = response.error or f"Module '{step.target}' reported failure"
                await self.breakers.record_failure(step.target, error)
                raise ExternalCallError(error, target=step.target)

            await self.breakers.record_success(step.target)
            return response.output

        def on_retry(number: int, error: Exception, delay: float) -> None:
            result.status = StepStatus.RETRYING
            result.retry_count = number
            result.retry_delays.append(delay)
            logger.info(
                "Step retry scheduled",
                execution_id=context.execution_id,
                step_id=step.id,
                attempt=number,
                max_retries=strategy.max_retries,
                delay=delay,
                error=str(error),
            )

        try:
            output = await execute_with_retry(attempt, strategy, on_retry=on_retry, sleep=self._sleep)
        except Exception as e:
            result.status = StepStatus.FAILED
            result.error = str(e)
            result.error_type = type(e).__name__
            logger.warning(
                "Step failed",
                execution_id=context.execution_id,
                step_id=step.id,
                attempts=attempts,
                error_type=result.error_type,
                error=result.error,
            )
        else:
            result.status = StepStatus.COMPLETED
            result.output = output

        result.completed_at = utcnow_iso()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

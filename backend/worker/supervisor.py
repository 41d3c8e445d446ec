"""
Execution Supervisor.

Runs chain executions on a fixed pool of asyncio workers fed by a queue.

Guarantees:
- At most one execution per trigger id is active at a time; later
  requests for the same trigger wait in a per-trigger backlog and are
  released in submission order. Different triggers run in parallel.
- A waiting request never occupies a worker.
- Lifecycle events (started, step completed, completed, failed,
  cancelled) are published without blocking the worker.
- Any error escaping an execution is caught at the worker boundary and
  reported as a failed result; the worker keeps serving the queue.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

import structlog

from core.logging_config import bind_execution, unbind_execution
from workflow.checkpoint import Checkpoint
from workflow.engine import ChainEngine
from workflow.state import (
    CancellationToken,
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    StepResult,
    generate_execution_id,
    utcnow_iso,
)
from worker.events import EventBus, LifecycleEvent, LifecycleEventType

logger = structlog.get_logger(__name__)


@dataclass
class ExecutionRequest:
    """A request to run a chain, or to resume one from a checkpoint."""
    chain_id: str
    input: dict = field(default_factory=dict)
    env: dict = field(default_factory=dict)
    trigger_id: Optional[str] = None
    execution_id: str = field(default_factory=generate_execution_id)
    checkpoint: Optional[Checkpoint] = None

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "ExecutionRequest":
        context = checkpoint.context
        return cls(
            chain_id=checkpoint.chain_id,
            input=dict(context.input),
            env=dict(context.env),
            trigger_id=context.trigger_id,
            execution_id=checkpoint.execution_id,
            checkpoint=checkpoint,
        )

    @property
    def serialization_key(self) -> str:
        """Requests sharing this key never run concurrently."""
        return self.trigger_id or self.execution_id


class ExecutionHandle:
    """Tracks one submitted request through queueing, running and completion."""

    def __init__(self, request: ExecutionRequest):
        self.request = request
        self.token = CancellationToken()
        self.status = ExecutionStatus.PENDING
        self.submitted_at = utcnow_iso()
        self.started_at: Optional[str] = None
        self.result: Optional[ExecutionResult] = None
        self._done = asyncio.Event()

    @property
    def execution_id(self) -> str:
        return self.request.execution_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def finish(self, result: ExecutionResult) -> None:
        self.result = result
        self.status = result.status
        self._done.set()

    async def wait(self, timeout: Optional[float] = None) -> ExecutionResult:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.result

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "chain_id": self.request.chain_id,
            "trigger_id": self.request.trigger_id,
            "status": self.status.value,
            "resumed": self.request.checkpoint is not None,
            "submitted_at": self.submitted_at,
            "started_at": self.started_at,
            "completed_at": self.result.completed_at if self.result else None,
            "error": self.result.error if self.result else None,
        }


class ExecutionSupervisor:
    """
    Worker pool over a ChainEngine.

    Usage:
        supervisor = ExecutionSupervisor(engine, workers=4)
        await supervisor.start()
        handle = supervisor.submit(ExecutionRequest(chain_id="sync-orders", trigger_id="t-1"))
        result = await handle.wait()
        await supervisor.stop()
    """

    def __init__(
        self,
        engine: ChainEngine,
        workers: int = 4,
        events: Optional[EventBus] = None,
        history_limit: int = 500,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.engine = engine
        self.worker_count = workers
        self.events = events or EventBus()
        self.history_limit = history_limit

        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._handles: Dict[str, ExecutionHandle] = {}
        self._active_keys: set = set()
        self._backlog: Dict[str, Deque[ExecutionHandle]] = {}
        self._running = False

        self.engine.on_step_complete = self._on_step_complete

    # ─── Lifecycle ────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"chain-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Execution supervisor started", workers=self.worker_count)

    async def stop(self, cancel_running: bool = True) -> None:
        """Stop all workers.

        With ``cancel_running`` in-flight executions are cancelled first;
        otherwise workers drain the queue and every trigger backlog
        before exiting.
        """
        if not self._running:
            return
        self._running = False

        if cancel_running:
            for handle in list(self._handles.values()):
                if not handle.done:
                    self.cancel(handle.execution_id, reason="Supervisor shutting down")
        else:
            # A finished run hands its trigger to the next backlogged request before
            # marking its queue item done, so join returns only once every backlog is empty
            await self._queue.join()

        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Execution supervisor stopped")

    # ─── Submission ───────────────────────────────────────────

    def submit(self, request: ExecutionRequest) -> ExecutionHandle:
        """Queue a request.

        Submitting an execution id that is still pending or running
        returns the existing handle instead of starting a second run.
        """
        existing = self._handles.get(request.execution_id)
        if existing is not None and not existing.done:
            logger.info("Execution already active", execution_id=request.execution_id)
            return existing

        handle = ExecutionHandle(request)
        self._handles[request.execution_id] = handle
        self._prune_history()

        key = request.serialization_key
        if key in self._active_keys:
            self._backlog.setdefault(key, deque()).append(handle)
            logger.info(
                "Execution waiting for trigger",
                execution_id=request.execution_id,
                trigger_id=request.trigger_id,
                position=len(self._backlog[key]),
            )
        else:
            self._active_keys.add(key)
            self._queue.put_nowait(handle)
            logger.info("Execution queued", execution_id=request.execution_id, chain_id=request.chain_id)
        return handle

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ExecutionResult]:
        handle = self._handles.get(execution_id)
        if handle is None:
            return None
        return await handle.wait(timeout)

    def cancel(self, execution_id: str, reason: str = "Cancelled by operator") -> bool:
        """Cancel a pending or running execution.

        Returns:
            False if the execution is unknown or already finished
        """
        handle = self._handles.get(execution_id)
        if handle is None or handle.done:
            return False

        handle.token.cancel(reason)
        if handle.status == ExecutionStatus.PENDING:
            backlog = self._backlog.get(handle.request.serialization_key)
            if backlog and handle in backlog:
                backlog.remove(handle)
            # Queued handles are finished now and skipped when dequeued
            self._finish(handle, self._cancelled_result(handle, reason))
        logger.info("Execution cancellation requested", execution_id=execution_id)
        return True

    # ─── Introspection ────────────────────────────────────────

    def get_handle(self, execution_id: str) -> Optional[ExecutionHandle]:
        return self._handles.get(execution_id)

    def get_execution(self, execution_id: str) -> Optional[dict]:
        handle = self._handles.get(execution_id)
        if handle is None:
            return None
        detail = handle.to_dict()
        live = self.engine.get_execution(execution_id)
        if live is not None:
            detail["progress"] = live
        if handle.result is not None:
            detail["result"] = handle.result.to_dict()
        return detail

    def list_executions(self, status: Optional[ExecutionStatus] = None, limit: int = 100) -> List[dict]:
        handles = list(self._handles.values())
        if status is not None:
            handles = [h for h in handles if h.status == status]
        handles.sort(key=lambda h: h.submitted_at, reverse=True)
        return [h.to_dict() for h in handles[:limit]]

    def stats(self) -> dict:
        statuses: Dict[str, int] = {}
        for handle in self._handles.values():
            statuses[handle.status.value] = statuses.get(handle.status.value, 0) + 1
        return {
            "running": self._running,
            "workers": self.worker_count,
            "queued": self._queue.qsize(),
            "waiting": sum(len(q) for q in self._backlog.values()),
            "active_triggers": len(self._active_keys),
            "executions": statuses,
            "events": self.events.stats(),
        }

    # ─── Workers ──────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        log = logger.bind(worker=index)
        while True:
            handle = await self._queue.get()
            try:
                if handle is None:
                    return
                if not handle.done:
                    await self._run(handle)
            except Exception as e:
                log.exception("Worker error", error=str(e))
            finally:
                self._queue.task_done()
                if handle is not None:
                    self._release(handle.request.serialization_key)

    def _release(self, key: str) -> None:
        """Hand the trigger to its next waiting request, if any."""
        backlog = self._backlog.get(key)
        if backlog:
            nxt = backlog.popleft()
            if not backlog:
                del self._backlog[key]
            self._queue.put_nowait(nxt)
            return
        self._backlog.pop(key, None)
        self._active_keys.discard(key)

    async def _run(self, handle: ExecutionHandle) -> None:
        request = handle.request
        handle.status = ExecutionStatus.RUNNING
        handle.started_at = utcnow_iso()
        bind_execution(handle.execution_id, request.chain_id, request.trigger_id)
        self._publish(LifecycleEventType.STARTED, handle, {"resumed": request.checkpoint is not None})

        try:
            if request.checkpoint is not None:
                result = await self.engine.resume(request.checkpoint, token=handle.token)
            else:
                result = await self.engine.execute(
                    request.chain_id,
                    request.input,
                    request.env,
                    execution_id=request.execution_id,
                    trigger_id=request.trigger_id,
                    token=handle.token,
                )
        except Exception as e:
            logger.exception("Execution raised at worker boundary", execution_id=handle.execution_id)
            result = ExecutionResult(
                execution_id=handle.execution_id,
                chain_id=request.chain_id,
                status=ExecutionStatus.FAILED,
                error=str(e),
                error_type=type(e).__name__,
                started_at=handle.started_at,
                completed_at=utcnow_iso(),
            )
        finally:
            unbind_execution()

        self._finish(handle, result)

    def _finish(self, handle: ExecutionHandle, result: ExecutionResult) -> None:
        handle.finish(result)
        if result.status == ExecutionStatus.COMPLETED:
            event_type = LifecycleEventType.COMPLETED
        elif result.status == ExecutionStatus.CANCELLED:
            event_type = LifecycleEventType.CANCELLED
        else:
            event_type = LifecycleEventType.FAILED
        self._publish(event_type, handle, {
            "status": result.status.value,
            "error": result.error,
            "error_type": result.error_type,
            "duration_ms": result.total_duration_ms,
        })

    @staticmethod
    def _cancelled_result(handle: ExecutionHandle, reason: str) -> ExecutionResult:
        now = utcnow_iso()
        return ExecutionResult(
            execution_id=handle.execution_id,
            chain_id=handle.request.chain_id,
            status=ExecutionStatus.CANCELLED,
            error=reason,
            started_at=now,
            completed_at=now,
        )

    async def _on_step_complete(self, context: ExecutionContext, step_result: StepResult) -> None:
        handle = self._handles.get(context.execution_id)
        if handle is None:
            return
        self._publish(LifecycleEventType.STEP_COMPLETED, handle, {
            "step_id": step_result.step_id,
            "status": step_result.status.value,
            "retry_count": step_result.retry_count,
            "duration_ms": step_result.duration_ms,
        })

    def _publish(self, event_type: LifecycleEventType, handle: ExecutionHandle, data: dict) -> None:
        self.events.publish(LifecycleEvent(
            type=event_type,
            execution_id=handle.execution_id,
            chain_id=handle.request.chain_id,
            trigger_id=handle.request.trigger_id,
            data=data,
        ))

    def _prune_history(self) -> None:
        finished = [eid for eid, h in self._handles.items() if h.done]
        excess = len(self._handles) - self.history_limit
        for eid in finished[:max(excess, 0)]:
            del self._handles[eid]

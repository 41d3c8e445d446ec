"""Tests for startup recovery of interrupted executions."""

import json

import pytest

from modules.base_module import FunctionModule, ModuleCall
from workflow.recovery import RecoveryService
from workflow.state import ExecutionContext, ExecutionStatus, StepResult, StepStatus


class CallLog:
    def __init__(self):
        self.calls = []

    async def __call__(self, request: ModuleCall):
        self.calls.append(request.params.get("name"))
        return dict(request.params)


@pytest.fixture
def call_log(modules) -> CallLog:
    log = CallLog()
    modules.register("tracked", FunctionModule("tracked", log))
    return log


@pytest.fixture
def three_steps(chains):
    chains.register({"id": "pipeline", "steps": [
        {"type": "module_call", "id": name, "target": "tracked", "operation": "run", "params": {"name": name}}
        for name in ("one", "two", "three")
    ]})


@pytest.fixture
def recovery(checkpoint_manager, supervisor) -> RecoveryService:
    return RecoveryService(checkpoint_manager, supervisor)


async def interrupted_after_first_step(checkpoint_manager, execution_id="exec-crashed-1", status=ExecutionStatus.RUNNING):
    context = ExecutionContext(
        execution_id=execution_id,
        chain_id="pipeline",
        input={"batch": 9},
        variables={"step_one_output": {"name": "one"}},
        trigger_id="nightly",
    )
    results = [StepResult(step_id="one", status=StepStatus.COMPLETED, output={"name": "one"})]
    await checkpoint_manager.save(execution_id, context, 1, results, status=status)
    return context


# ─── Resuming ───

class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_from_next_step(self, recovery, supervisor, checkpoint_manager, call_log, three_steps):
        await interrupted_after_first_step(checkpoint_manager)
        await supervisor.start()

        outcomes = await recovery.recover_all()
        assert len(outcomes) == 1
        assert outcomes[0].recovered
        assert outcomes[0].resume_from_step == 1
        assert outcomes[0].completed_steps_count == 1

        result = await supervisor.wait("exec-crashed-1", timeout=5)
        assert result.status == ExecutionStatus.COMPLETED
        assert call_log.calls == ["two", "three"]
        assert [r.step_id for r in result.step_results] == ["one", "two", "three"]
        assert supervisor.get_handle("exec-crashed-1").to_dict()["resumed"] is True
        assert await checkpoint_manager.list() == []

    @pytest.mark.asyncio
    async def test_resume_is_idempotent(self, recovery, supervisor, checkpoint_manager, call_log, three_steps):
        await interrupted_after_first_step(checkpoint_manager)

        first = await recovery.recover_execution("exec-crashed-1")
        second = await recovery.recover_execution("exec-crashed-1")
        assert first.recovered
        assert not second.recovered
        assert second.error == "Execution already active"

        await supervisor.start()
        await supervisor.wait("exec-crashed-1", timeout=5)
        assert call_log.calls == ["two", "three"]

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, recovery):
        assert await recovery.recover_all() == []

    @pytest.mark.asyncio
    async def test_missing_checkpoint(self, recovery):
        outcome = await recovery.recover_execution("exec-unknown")
        assert not outcome.recovered
        assert outcome.error == "No checkpoint found"


# ─── Rejected checkpoints ───

class TestRejected:
    @pytest.mark.asyncio
    async def test_integrity_failure_needs_manual_restart(
        self, recovery, supervisor, checkpoint_manager, checkpoint_dir, call_log, three_steps
    ):
        await interrupted_after_first_step(checkpoint_manager)
        path = checkpoint_dir / "exec-crashed-1.checkpoint"
        record = json.loads(path.read_text())
        record["integrity_digest"] = "0" * 64
        path.write_text(json.dumps(record))

        outcomes = await recovery.recover_all()
        assert outcomes[0].needs_manual_restart
        assert not outcomes[0].recovered
        assert "digest mismatch" in outcomes[0].error
        assert supervisor.get_handle("exec-crashed-1") is None
        assert call_log.calls == []
        assert path.exists()

    @pytest.mark.asyncio
    async def test_cancelled_execution_not_resumed(self, recovery, supervisor, checkpoint_manager, three_steps):
        await interrupted_after_first_step(checkpoint_manager, status=ExecutionStatus.CANCELLED)
        outcome = await recovery.recover_execution("exec-crashed-1")
        assert not outcome.recovered
        assert not outcome.needs_manual_restart
        assert outcome.status == "cancelled"
        assert supervisor.get_handle("exec-crashed-1") is None

    @pytest.mark.asyncio
    async def test_recovery_log(self, recovery, checkpoint_manager, three_steps):
        await interrupted_after_first_step(checkpoint_manager, "exec-a")
        await interrupted_after_first_step(checkpoint_manager, "exec-b", status=ExecutionStatus.CANCELLED)
        await recovery.recover_all()
        log = recovery.get_recovery_log()
        assert {entry["execution_id"] for entry in log} == {"exec-a", "exec-b"}
        by_id = {entry["execution_id"]: entry for entry in log}
        assert by_id["exec-a"]["recovered"] is True
        assert by_id["exec-b"]["recovered"] is False

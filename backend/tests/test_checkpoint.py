"""Tests for the checkpoint manager, stores and payload security."""

import asyncio
import json
import os
import stat
from types import SimpleNamespace

import pytest
import pytest_asyncio

from core.exceptions import CheckpointIntegrityError, ValidationError
from core.security import PayloadCipher, compute_digest, generate_encryption_key, sanitize_identifier
from workflow.checkpoint import (
    CheckpointManager,
    DatabaseCheckpointStore,
    FileCheckpointStore,
    create_checkpoint_manager,
)
from workflow.state import ExecutionContext, ExecutionStatus, StepResult, StepStatus


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(
        execution_id="exec-abc-123",
        chain_id="orders",
        input={"order_id": 42},
        variables={"step_fetch_output": {"items": [1, 2, 3]}},
        env={"REGION": "eu"},
        trigger_id="trigger-1",
    )


@pytest.fixture
def results() -> list:
    return [
        StepResult(step_id="fetch", status=StepStatus.COMPLETED, output={"items": [1, 2, 3]}, retry_count=1,
                   retry_delays=[5.0], routing_evaluated=True, routing_action_taken="continue"),
        StepResult(step_id="guard", status=StepStatus.SKIPPED, skip_reason="condition not met"),
    ]


def record_path(checkpoint_dir, execution_id):
    return checkpoint_dir / f"{execution_id}.checkpoint"


# ─── Round trip ───

class TestSaveLoad:
    @pytest.mark.asyncio
    async def test_round_trip(self, checkpoint_manager, context, results):
        await checkpoint_manager.save(context.execution_id, context, 2, results, started_at="2026-01-01T00:00:00+00:00")
        loaded = await checkpoint_manager.load(context.execution_id)

        assert loaded.execution_id == context.execution_id
        assert loaded.chain_id == "orders"
        assert loaded.context == context
        assert loaded.next_index == 2
        assert loaded.results == results
        assert loaded.status == ExecutionStatus.RUNNING
        assert loaded.started_at == "2026-01-01T00:00:00+00:00"
        assert loaded.can_resume

    @pytest.mark.asyncio
    async def test_payload_not_stored_in_clear(self, checkpoint_manager, checkpoint_dir, context, results):
        await checkpoint_manager.save(context.execution_id, context, 1, results)
        raw = record_path(checkpoint_dir, context.execution_id).read_text()
        record = json.loads(raw)
        assert set(record) == {"execution_id", "encrypted_payload", "integrity_digest", "created_at"}
        assert "order_id" not in raw
        assert "REGION" not in raw

    @pytest.mark.asyncio
    async def test_file_permissions(self, checkpoint_manager, checkpoint_dir, context):
        await checkpoint_manager.save(context.execution_id, context, 0, [])
        mode = stat.S_IMODE(os.stat(record_path(checkpoint_dir, context.execution_id)).st_mode)
        assert mode == 0o600

    @pytest.mark.asyncio
    async def test_later_save_supersedes(self, checkpoint_manager, context, results):
        await checkpoint_manager.save(context.execution_id, context, 1, results[:1])
        await checkpoint_manager.save(context.execution_id, context, 2, results)
        loaded = await checkpoint_manager.load(context.execution_id)
        assert loaded.next_index == 2
        assert len(loaded.results) == 2

    @pytest.mark.asyncio
    async def test_load_missing(self, checkpoint_manager):
        assert await checkpoint_manager.load("exec-none") is None

    @pytest.mark.asyncio
    async def test_list_and_delete(self, checkpoint_manager, context):
        await checkpoint_manager.save("exec-1", context, 0, [])
        await checkpoint_manager.save("exec-2", context, 0, [])
        assert sorted(await checkpoint_manager.list()) == ["exec-1", "exec-2"]

        assert await checkpoint_manager.delete("exec-1") is True
        assert await checkpoint_manager.delete("exec-1") is False
        assert await checkpoint_manager.list() == ["exec-2"]

    @pytest.mark.asyncio
    async def test_mark(self, checkpoint_manager, context, results):
        await checkpoint_manager.save(context.execution_id, context, 1, results)
        marked = await checkpoint_manager.mark(context.execution_id, ExecutionStatus.CANCELLED)
        assert marked.status == ExecutionStatus.CANCELLED
        loaded = await checkpoint_manager.load(context.execution_id)
        assert loaded.status == ExecutionStatus.CANCELLED
        assert not loaded.can_resume
        assert loaded.next_index == 1

    @pytest.mark.asyncio
    async def test_mark_missing(self, checkpoint_manager):
        assert await checkpoint_manager.mark("exec-none", ExecutionStatus.CANCELLED) is None


# ─── Cancelled writes ───

class TestCancelledWrites:
    @pytest.mark.asyncio
    async def test_delete_waits_for_cancelled_save(self, checkpoint_manager, context, slow_checkpoint_writes):
        slow_checkpoint_writes["slow_call"] = 1
        task = asyncio.create_task(checkpoint_manager.save("exec-slow", context, 1, []))
        await asyncio.sleep(0.05)
        task.cancel()

        assert await checkpoint_manager.delete("exec-slow") is True
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.5)
        assert await checkpoint_manager.list() == []

    @pytest.mark.asyncio
    async def test_cancelled_save_holds_key_until_written(self, checkpoint_manager, context, slow_checkpoint_writes):
        slow_checkpoint_writes["slow_call"] = 1
        task = asyncio.create_task(checkpoint_manager.save("exec-slow", context, 1, []))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # The cancelled save still completed before the task ended
        assert (await checkpoint_manager.load("exec-slow")).next_index == 1

    @pytest.mark.asyncio
    async def test_no_temporary_files_left(self, checkpoint_manager, checkpoint_dir, context):
        await asyncio.gather(*(checkpoint_manager.save("exec-1", context, i, []) for i in range(5)))
        assert [p.name for p in checkpoint_dir.iterdir()] == ["exec-1.checkpoint"]


# ─── Integrity ───

class TestIntegrity:
    @pytest.mark.asyncio
    async def test_corrupted_payload(self, checkpoint_manager, checkpoint_dir, context):
        await checkpoint_manager.save(context.execution_id, context, 0, [])
        path = record_path(checkpoint_dir, context.execution_id)
        record = json.loads(path.read_text())
        payload = record["encrypted_payload"]
        middle = len(payload) // 2
        record["encrypted_payload"] = payload[:middle] + ("A" if payload[middle] != "A" else "B") + payload[middle + 1:]
        path.write_text(json.dumps(record))

        with pytest.raises(CheckpointIntegrityError) as exc_info:
            await checkpoint_manager.load(context.execution_id)
        assert exc_info.value.execution_id == context.execution_id

    @pytest.mark.asyncio
    async def test_digest_mismatch(self, checkpoint_manager, checkpoint_dir, context):
        await checkpoint_manager.save(context.execution_id, context, 0, [])
        path = record_path(checkpoint_dir, context.execution_id)
        record = json.loads(path.read_text())
        record["integrity_digest"] = compute_digest("something else")
        path.write_text(json.dumps(record))

        with pytest.raises(CheckpointIntegrityError, match="digest mismatch"):
            await checkpoint_manager.load(context.execution_id)

    @pytest.mark.asyncio
    async def test_wrong_key(self, checkpoint_dir, checkpoint_manager, context):
        await checkpoint_manager.save(context.execution_id, context, 0, [])
        other = CheckpointManager(FileCheckpointStore(str(checkpoint_dir)), PayloadCipher(generate_encryption_key()))
        with pytest.raises(CheckpointIntegrityError):
            await other.load(context.execution_id)

    @pytest.mark.asyncio
    async def test_unparsable_record(self, checkpoint_manager, checkpoint_dir):
        checkpoint_dir.mkdir(parents=True, exist_ok=True)
        record_path(checkpoint_dir, "exec-junk").write_text("not json at all")
        with pytest.raises(CheckpointIntegrityError):
            await checkpoint_manager.load("exec-junk")

    @pytest.mark.asyncio
    async def test_record_missing_fields(self, checkpoint_manager, checkpoint_dir):
        checkpoint_dir.mkdir(parents=True, exist_ok=True)
        record_path(checkpoint_dir, "exec-partial").write_text(json.dumps({"execution_id": "exec-partial"}))
        with pytest.raises(CheckpointIntegrityError, match="malformed"):
            await checkpoint_manager.load("exec-partial")


# ─── Identifier sanitization ───

class TestSanitization:
    def test_allowed_characters_kept(self):
        assert sanitize_identifier("exec-lq2x9-abc_DEF") == "exec-lq2x9-abc_DEF"

    def test_path_characters_rejected(self):
        with pytest.raises(ValidationError, match="disallowed"):
            sanitize_identifier("../../etc/passwd")

    def test_distinct_ids_never_share_a_key(self):
        assert sanitize_identifier("run1") == "run1"
        with pytest.raises(ValidationError):
            sanitize_identifier("run.1")

    def test_empty_result_rejected(self):
        with pytest.raises(ValidationError):
            sanitize_identifier("../..//")

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError):
            sanitize_identifier("a" * 65)
        assert sanitize_identifier("a" * 64) == "a" * 64

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, checkpoint_manager, checkpoint_dir, context):
        with pytest.raises(ValidationError):
            await checkpoint_manager.save("../../escape", context, 0, [])
        with pytest.raises(ValidationError):
            await checkpoint_manager.load("../../escape")
        assert not checkpoint_dir.exists() or list(checkpoint_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_similar_ids_keep_separate_checkpoints(self, checkpoint_manager, context):
        await checkpoint_manager.save("run1", context, 3, [])
        with pytest.raises(ValidationError):
            await checkpoint_manager.save("run.1", context, 0, [])
        assert (await checkpoint_manager.load("run1")).next_index == 3
        assert await checkpoint_manager.list() == ["run1"]


# ─── Database store ───

class TestDatabaseStore:
    @pytest_asyncio.fixture
    async def db_manager(self, tmp_path, cipher):
        from db.database import create_db_engine, create_session_factory, init_db

        engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkpoints.db'}")
        await init_db(engine)
        yield CheckpointManager(DatabaseCheckpointStore(create_session_factory(engine)), cipher)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_round_trip(self, db_manager, context, results):
        await db_manager.save(context.execution_id, context, 1, results)
        await db_manager.save(context.execution_id, context, 2, results)
        loaded = await db_manager.load(context.execution_id)
        assert loaded.next_index == 2
        assert loaded.results == results
        assert await db_manager.list() == [context.execution_id]

    @pytest.mark.asyncio
    async def test_delete(self, db_manager, context):
        await db_manager.save(context.execution_id, context, 0, [])
        assert await db_manager.delete(context.execution_id) is True
        assert await db_manager.load(context.execution_id) is None
        assert await db_manager.list() == []


# ─── Factory ───

class TestFactory:
    def test_missing_key(self, tmp_path):
        settings = SimpleNamespace(CHECKPOINT_ENCRYPTION_KEY="", CHECKPOINT_BACKEND="file", CHECKPOINT_DIR=str(tmp_path))
        with pytest.raises(RuntimeError, match="encryption"):
            create_checkpoint_manager(settings)

    def test_unknown_backend(self, tmp_path):
        settings = SimpleNamespace(
            CHECKPOINT_ENCRYPTION_KEY=generate_encryption_key(), CHECKPOINT_BACKEND="s3", CHECKPOINT_DIR=str(tmp_path),
        )
        with pytest.raises(RuntimeError, match="Unknown"):
            create_checkpoint_manager(settings)

    def test_file_backend(self, tmp_path):
        settings = SimpleNamespace(
            CHECKPOINT_ENCRYPTION_KEY=generate_encryption_key(), CHECKPOINT_BACKEND="file", CHECKPOINT_DIR=str(tmp_path),
        )
        manager = create_checkpoint_manager(settings)
        assert isinstance(manager.store, FileCheckpointStore)

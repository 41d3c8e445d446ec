"""
Execution Checkpoint & Resume System.

Ensures chain executions survive crashes and restarts. After every
committed step the runner saves a checkpoint holding everything needed to
continue: the execution context, the index of the next step and the step
results so far.

Architecture:
- Payload (context + next index + results) is serialized to JSON
- A SHA-256 digest of the plaintext is computed
- The plaintext is encrypted with Fernet using CHECKPOINT_ENCRYPTION_KEY
- The record {execution_id, encrypted_payload, integrity_digest, created_at}
  is written to a store (files or database), superseding the previous one
- On load, decryption and digest are verified; any mismatch raises
  CheckpointIntegrityError and the execution is not resumed
"""

import asyncio
import json
import os
import secrets
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, select

from core.exceptions import CheckpointIntegrityError
from core.security import PayloadCipher, compute_digest, sanitize_identifier
from workflow.state import ExecutionContext, ExecutionStatus, StepResult, utcnow_iso

logger = structlog.get_logger(__name__)

CHECKPOINT_SUFFIX = ".checkpoint"
PAYLOAD_VERSION = 1


# ─── Checkpoint data ──────────────────────────────────────────

@dataclass
class Checkpoint:
    """Decrypted checkpoint contents."""
    execution_id: str
    chain_id: str
    context: ExecutionContext
    next_index: int
    results: List[StepResult] = field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def can_resume(self) -> bool:
        """Only executions that were still running when interrupted resume."""
        return self.status in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": PAYLOAD_VERSION,
            "execution_id": self.execution_id,
            "chain_id": self.chain_id,
            "status": self.status.value,
            "next_index": self.next_index,
            "context": self.context.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "started_at": self.started_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            execution_id=data["execution_id"],
            chain_id=data["chain_id"],
            context=ExecutionContext.from_dict(data["context"]),
            next_index=int(data["next_index"]),
            results=[StepResult.from_dict(r) for r in data.get("results", [])],
            status=ExecutionStatus(data.get("status", "running")),
            started_at=data.get("started_at"),
            created_at=data.get("created_at") or utcnow_iso(),
        )


@dataclass
class PersistedCheckpoint:
    """The record as it sits in a store."""
    execution_id: str
    encrypted_payload: str
    integrity_digest: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "encrypted_payload": self.encrypted_payload,
            "integrity_digest": self.integrity_digest,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedCheckpoint":
        return cls(
            execution_id=str(data["execution_id"]),
            encrypted_payload=str(data["encrypted_payload"]),
            integrity_digest=str(data["integrity_digest"]),
            created_at=str(data["created_at"]),
        )


# ─── Stores ───────────────────────────────────────────────────

class CheckpointStore(ABC):
    """Persistence for checkpoint records, keyed by sanitized execution id."""

    @abstractmethod
    async def write(self, key: str, record: PersistedCheckpoint) -> None:
        """Atomically replace the record for ``key``."""

    @abstractmethod
    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Raw record dict, or None if absent.

        Raises:
            ValueError: If the stored record cannot be parsed
        """

    @abstractmethod
    async def keys(self) -> List[str]:
        """All stored keys, oldest first."""

    @abstractmethod
    async def remove(self, key: str) -> bool:
        """Delete the record. Returns False if it did not exist."""


class FileCheckpointStore(CheckpointStore):
    """One ``<key>.checkpoint`` JSON file per execution, readable by owner only."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}{CHECKPOINT_SUFFIX}"

    def _write_sync(self, key: str, record: PersistedCheckpoint) -> None:
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        final_path = self._path(key)
        tmp_path = final_path.with_name(f"{final_path.name}.{secrets.token_hex(4)}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(record.to_dict(), fh)
            fh.flush()
            os.fsync(fh.fileno())
        # Readers see either the previous checkpoint or this one, never a partial file
        os.replace(tmp_path, final_path)

    async def write(self, key: str, record: PersistedCheckpoint) -> None:
        await asyncio.to_thread(self._write_sync, key, record)

    def _read_sync(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("checkpoint record is not an object")
        return data

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_sync, key)

    def _keys_sync(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        files = sorted(self.directory.glob(f"*{CHECKPOINT_SUFFIX}"), key=lambda p: p.stat().st_mtime)
        return [p.name[: -len(CHECKPOINT_SUFFIX)] for p in files]

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._keys_sync)

    def _remove_sync(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    async def remove(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove_sync, key)


class DatabaseCheckpointStore(CheckpointStore):
    """Checkpoint records in the ``execution_checkpoints`` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def write(self, key: str, record: PersistedCheckpoint) -> None:
        from db.models.execution_state import ExecutionCheckpointModel

        async with self.session_factory() as session:
            result = await session.execute(
                select(ExecutionCheckpointModel).where(ExecutionCheckpointModel.execution_id == key)
            )
            row = result.scalars().first()
            if row is None:
                row = ExecutionCheckpointModel(execution_id=key)
                session.add(row)
            row.encrypted_payload = record.encrypted_payload
            row.integrity_digest = record.integrity_digest
            row.created_at = datetime.fromisoformat(record.created_at)
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        from db.models.execution_state import ExecutionCheckpointModel

        async with self.session_factory() as session:
            result = await session.execute(
                select(ExecutionCheckpointModel).where(ExecutionCheckpointModel.execution_id == key)
            )
            row = result.scalars().first()
            if row is None:
                return None
            return {
                "execution_id": row.execution_id,
                "encrypted_payload": row.encrypted_payload,
                "integrity_digest": row.integrity_digest,
                "created_at": row.created_at.isoformat() if row.created_at else utcnow_iso(),
            }

    async def keys(self) -> List[str]:
        from db.models.execution_state import ExecutionCheckpointModel

        async with self.session_factory() as session:
            result = await session.execute(
                select(ExecutionCheckpointModel.execution_id).order_by(ExecutionCheckpointModel.created_at)
            )
            return [row[0] for row in result.fetchall()]

    async def remove(self, key: str) -> bool:
        from db.models.execution_state import ExecutionCheckpointModel

        async with self.session_factory() as session:
            result = await session.execute(
                delete(ExecutionCheckpointModel).where(ExecutionCheckpointModel.execution_id == key)
            )
            await session.commit()
            return (result.rowcount or 0) > 0


# ─── Manager ──────────────────────────────────────────────────

class CheckpointManager:
    """
    Encrypts, verifies and persists execution checkpoints.

    Writes for one execution id are serialized so a later checkpoint
    always supersedes an earlier one. A write that has reached the store
    finishes under its lock even when the saving task is cancelled, so a
    later delete or status rewrite always lands after it.
    """

    def __init__(self, store: CheckpointStore, cipher: PayloadCipher):
        self.store = store
        self.cipher = cipher
        # Entries live while a holder or waiter references the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _write(self, key: str, record: PersistedCheckpoint) -> None:
        async with self._lock(key):
            write = asyncio.ensure_future(self.store.write(key, record))
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                # The store may still be writing from a worker thread; keep the key until it is done
                await asyncio.wait({write})
                if not write.cancelled() and write.exception() is not None:
                    logger.warning(
                        "Checkpoint write failed after cancellation",
                        execution_id=record.execution_id,
                        error=str(write.exception()),
                    )
                raise

    async def save(
        self,
        execution_id: str,
        context: ExecutionContext,
        next_index: int,
        results: List[StepResult],
        status: ExecutionStatus = ExecutionStatus.RUNNING,
        started_at: Optional[str] = None,
    ) -> Checkpoint:
        """Encrypt and persist the execution state.

        Called only between steps, after a step's result is recorded.
        """
        key = sanitize_identifier(execution_id)
        checkpoint = Checkpoint(
            execution_id=execution_id,
            chain_id=context.chain_id,
            context=context,
            next_index=next_index,
            results=list(results),
            status=status,
            started_at=started_at,
        )
        plaintext = json.dumps(checkpoint.to_payload(), sort_keys=True, default=str)
        record = PersistedCheckpoint(
            execution_id=execution_id,
            encrypted_payload=self.cipher.encrypt(plaintext),
            integrity_digest=compute_digest(plaintext),
            created_at=checkpoint.created_at,
        )

        await self._write(key, record)

        logger.debug(
            "Checkpoint saved",
            execution_id=execution_id,
            next_index=next_index,
            results=len(results),
            status=status.value,
        )
        return checkpoint

    async def load(self, execution_id: str) -> Optional[Checkpoint]:
        """Load and verify a checkpoint.

        Returns:
            The checkpoint, or None if none exists

        Raises:
            CheckpointIntegrityError: If the record is unreadable, fails
                decryption, or its digest does not match
        """
        key = sanitize_identifier(execution_id)
        try:
            raw = await self.store.read(key)
        except ValueError as e:
            raise self._integrity_failure(execution_id, f"unreadable record: {e}") from e
        if raw is None:
            return None

        try:
            record = PersistedCheckpoint.from_dict(raw)
        except (KeyError, TypeError) as e:
            raise self._integrity_failure(execution_id, f"malformed record: {e}") from e

        try:
            plaintext = self.cipher.decrypt(record.encrypted_payload)
        except ValueError as e:
            raise self._integrity_failure(execution_id, str(e)) from e

        if compute_digest(plaintext) != record.integrity_digest:
            raise self._integrity_failure(execution_id, "digest mismatch")

        try:
            checkpoint = Checkpoint.from_payload(json.loads(plaintext))
        except (ValueError, KeyError, TypeError) as e:
            raise self._integrity_failure(execution_id, f"invalid payload: {e}") from e

        if checkpoint.execution_id != record.execution_id:
            raise self._integrity_failure(execution_id, "execution id mismatch")

        logger.info(
            "Checkpoint loaded",
            execution_id=execution_id,
            status=checkpoint.status.value,
            next_index=checkpoint.next_index,
            completed_steps=len(checkpoint.results),
        )
        return checkpoint

    async def mark(self, execution_id: str, status: ExecutionStatus) -> Optional[Checkpoint]:
        """Rewrite an existing checkpoint with a new status.

        Returns:
            The updated checkpoint, or None if none exists
        """
        checkpoint = await self.load(execution_id)
        if checkpoint is None:
            return None
        return await self.save(
            execution_id,
            checkpoint.context,
            checkpoint.next_index,
            checkpoint.results,
            status=status,
            started_at=checkpoint.started_at,
        )

    async def list(self) -> List[str]:
        """Ids of all stored checkpoints, oldest first."""
        return await self.store.keys()

    async def delete(self, execution_id: str) -> bool:
        key = sanitize_identifier(execution_id)
        async with self._lock(key):
            removed = await self.store.remove(key)
        if removed:
            logger.debug("Checkpoint deleted", execution_id=execution_id)
        return removed

    @staticmethod
    def _integrity_failure(execution_id: str, reason: str) -> CheckpointIntegrityError:
        logger.error("Checkpoint integrity check failed", execution_id=execution_id, reason=reason)
        return CheckpointIntegrityError(execution_id, reason)


def create_checkpoint_manager(settings, session_factory=None) -> CheckpointManager:
    """Build the manager for the configured backend.

    Raises:
        RuntimeError: If CHECKPOINT_ENCRYPTION_KEY is missing or invalid
    """
    try:
        cipher = PayloadCipher(settings.CHECKPOINT_ENCRYPTION_KEY)
    except ValueError as e:
        raise RuntimeError(f"Checkpoint encryption unavailable: {e}") from e

    if settings.CHECKPOINT_BACKEND == "database":
        if session_factory is None:
            raise RuntimeError("Database checkpoint backend requires a session factory")
        store: CheckpointStore = DatabaseCheckpointStore(session_factory)
    elif settings.CHECKPOINT_BACKEND == "file":
        store = FileCheckpointStore(settings.CHECKPOINT_DIR)
    else:
        raise RuntimeError(f"Unknown CHECKPOINT_BACKEND: {settings.CHECKPOINT_BACKEND}")

    return CheckpointManager(store, cipher)

"""Shared pytest fixtures for the chain execution engine test suite.

Provides:
- Settings overrides (encryption key, checkpoint dir) applied before imports
- Module, circuit breaker and chain registries
- Step executor with a recording (non-sleeping) backoff
- Chain engine wired to a file checkpoint store under tmp_path
- Supervisor and FastAPI test client (httpx.AsyncClient)
"""

import os
import time
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("CHECKPOINT_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("CHAINS_DIR", "./nonexistent-chains-dir")

from core.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from core.security import PayloadCipher, generate_encryption_key  # noqa: E402
from modules.base_module import FunctionModule, ModuleCall, ModuleResponse  # noqa: E402
from modules.registry import ModuleRegistry  # noqa: E402
from workflow.checkpoint import CheckpointManager, FileCheckpointStore  # noqa: E402
from workflow.definitions import ChainRegistry  # noqa: E402
from workflow.engine import ChainEngine  # noqa: E402
from workflow.step_executor import StepExecutor  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock for circuit breaker tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Module fixtures
# ---------------------------------------------------------------------------

async def _echo(request: ModuleCall):
    return dict(request.params)


async def _fail(request: ModuleCall):
    return ModuleResponse(success=False, error=f"{request.operation} rejected")


@pytest.fixture
def modules() -> ModuleRegistry:
    """Registry with an ``echo`` module (returns its params) and ``broken`` (always fails)."""
    registry = ModuleRegistry()
    registry.register("echo", FunctionModule("echo", _echo))
    registry.register("broken", FunctionModule("broken", _fail))
    return registry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breakers(clock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(failure_threshold=3, recovery_timeout=30.0, clock=clock)


@pytest.fixture
def sleeps() -> list:
    """Backoff delays requested by the step executor, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def step_executor(modules, breakers, fake_sleep) -> StepExecutor:
    return StepExecutor(modules, breakers, max_retries=5, max_retry_delay=60.0, sleep=fake_sleep)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def chains() -> ChainRegistry:
    return ChainRegistry()


@pytest.fixture
def cipher() -> PayloadCipher:
    return PayloadCipher(generate_encryption_key())


@pytest.fixture
def checkpoint_dir(tmp_path):
    return tmp_path / "checkpoints"


@pytest.fixture
def checkpoint_manager(checkpoint_dir, cipher) -> CheckpointManager:
    return CheckpointManager(FileCheckpointStore(str(checkpoint_dir)), cipher)


@pytest.fixture
def slow_checkpoint_writes(monkeypatch) -> dict:
    """Block the worker thread of one file checkpoint write (1-based ``slow_call``) for ``delay`` seconds."""
    original = FileCheckpointStore._write_sync
    state = {"calls": 0, "slow_call": 2, "delay": 0.4}

    def _write_sync(self, key, record):
        state["calls"] += 1
        if state["calls"] == state["slow_call"]:
            time.sleep(state["delay"])
        original(self, key, record)

    monkeypatch.setattr(FileCheckpointStore, "_write_sync", _write_sync)
    return state


@pytest.fixture
def engine(chains, step_executor, checkpoint_manager) -> ChainEngine:
    return ChainEngine(
        chains,
        step_executor,
        checkpoint_manager=checkpoint_manager,
        max_recursion_depth=3,
        default_timeout=30.0,
    )


# ---------------------------------------------------------------------------
# Runtime / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def runtime(chains, modules, breakers, checkpoint_manager):
    """Started runtime around the test registries (no recovery scan)."""
    from app.config import get_settings
    from app.runtime import build_runtime

    rt = await build_runtime(
        get_settings(),
        chains=chains,
        modules=modules,
        breakers=breakers,
        checkpoints=checkpoint_manager,
    )
    await rt.start(recover=False)
    yield rt
    await rt.stop()


@pytest_asyncio.fixture
async def client(runtime) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client over an app wired to the test runtime."""
    from app.main import create_app

    transport = ASGITransport(app=create_app(runtime))
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


@pytest_asyncio.fixture
async def supervisor(engine):
    """Two-worker supervisor over the test engine; not started."""
    from worker.supervisor import ExecutionSupervisor

    sup = ExecutionSupervisor(engine, workers=2)
    yield sup
    await sup.stop()

"""Process-wide wiring of the chain execution components.

Everything the admin API and startup recovery need is built once here and
attached to ``app.state.runtime``. Nothing in the engine reaches for a
module-level singleton, so tests can assemble a runtime with their own
modules, breakers and checkpoint store.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional

import structlog

from app.config import Settings
from core.circuit_breaker import CircuitBreakerRegistry
from modules.registry import ModuleRegistry
from workflow.checkpoint import CheckpointManager, create_checkpoint_manager
from workflow.definitions import ChainRegistry
from workflow.engine import ChainEngine
from workflow.recovery import RecoveryResult, RecoveryService
from workflow.step_executor import StepExecutor
from worker.events import EventBus
from worker.supervisor import ExecutionSupervisor

logger = structlog.get_logger(__name__)


@dataclass
class ChainRuntime:
    settings: Settings
    chains: ChainRegistry
    modules: ModuleRegistry
    breakers: CircuitBreakerRegistry
    checkpoints: CheckpointManager
    engine: ChainEngine
    supervisor: ExecutionSupervisor
    recovery: RecoveryService
    events: EventBus
    db_engine: Any = None
    recovered: List[RecoveryResult] = field(default_factory=list)

    async def start(self, recover: bool = True) -> None:
        await self.supervisor.start()
        if recover:
            self.recovered = await self.recovery.recover_all()

    async def stop(self) -> None:
        await self.supervisor.stop()
        if self.db_engine is not None:
            await self.db_engine.dispose()


async def build_runtime(
    settings: Settings,
    chains: Optional[ChainRegistry] = None,
    modules: Optional[ModuleRegistry] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    checkpoints: Optional[CheckpointManager] = None,
) -> ChainRuntime:
    """Assemble a runtime from settings, with optional injected components.

    Chains are loaded from ``CHAINS_DIR`` when no registry is given.
    """
    db_engine = None
    if checkpoints is None:
        session_factory = None
        if settings.CHECKPOINT_BACKEND == "database":
            from db.database import create_db_engine, create_session_factory, init_db

            db_engine = create_db_engine(settings.DATABASE_URL)
            await init_db(db_engine)
            session_factory = create_session_factory(db_engine)
        checkpoints = create_checkpoint_manager(settings, session_factory)

    if chains is None:
        chains = ChainRegistry()
        count = chains.load_directory(settings.CHAINS_DIR)
        logger.info("Chain definitions loaded", count=count, directory=settings.CHAINS_DIR)

    modules = modules or ModuleRegistry.from_settings(settings)
    breakers = breakers or CircuitBreakerRegistry.from_settings(settings)
    events = EventBus(max_queue_size=settings.EVENT_QUEUE_SIZE)

    step_executor = StepExecutor(
        modules,
        breakers,
        max_retries=settings.MAX_STEP_RETRIES,
        max_retry_delay=settings.MAX_RETRY_DELAY,
    )
    engine = ChainEngine(
        chains,
        step_executor,
        checkpoint_manager=checkpoints,
        max_recursion_depth=settings.MAX_RECURSION_DEPTH,
        default_timeout=settings.DEFAULT_CHAIN_TIMEOUT,
    )
    supervisor = ExecutionSupervisor(engine, workers=settings.MAX_CONCURRENT_EXECUTIONS, events=events)
    recovery = RecoveryService(checkpoints, supervisor)

    return ChainRuntime(
        settings=settings,
        chains=chains,
        modules=modules,
        breakers=breakers,
        checkpoints=checkpoints,
        engine=engine,
        supervisor=supervisor,
        recovery=recovery,
        events=events,
        db_engine=db_engine,
    )

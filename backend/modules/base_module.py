"""
Base interface for external modules called by ``module_call`` steps.

A module is any external collaborator a chain step can dispatch to (an
HTTP service, an LLM client, a git helper). The engine only knows the
dispatch contract:

    ModuleCall{target, operation, params, timeout_ms} -> ModuleResponse{success, output?, error?}
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ModuleCall:
    """One dispatch request produced by the step executor."""
    target: str
    operation: str
    params: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: int = 0
    env: Dict[str, str] = field(default_factory=dict)
    execution_id: Optional[str] = None
    step_id: Optional[str] = None


class ModuleResponse:
    """Standardized result of a module call."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.metadata = metadata or {}
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseModule(ABC):
    """
    Abstract base class for module implementations.

    Subclasses implement ``call(request)``. ``run(request)`` is the entry
    point used by the engine and adds timing and logging.
    """

    name: str = "base"
    description: str = "Abstract module"

    @abstractmethod
    async def call(self, request: ModuleCall) -> ModuleResponse:
        """
        Perform one operation.

        Args:
            request: Target, operation and already-resolved params

        Returns:
            ModuleResponse with output or error
        """

    async def run(self, request: ModuleCall) -> ModuleResponse:
        """
        Run the call with timing and logging.

        Exceptions propagate to the caller so the retry controller can
        classify them.
        """
        start = time.monotonic()
        logger.debug(
            "Module call starting",
            module=request.target,
            operation=request.operation,
            execution_id=request.execution_id,
            step_id=request.step_id,
        )
        try:
            response = await self.call(request)
        except Exception as e:
            logger.warning(
                "Module call raised",
                module=request.target,
                operation=request.operation,
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise

        response.duration_ms = (time.monotonic() - start) * 1000
        logger.debug(
            "Module call finished",
            module=request.target,
            operation=request.operation,
            success=response.success,
            duration_ms=round(response.duration_ms, 2),
        )
        return response


class FunctionModule(BaseModule):
    """Adapts a plain async function into a module.

    The handler receives the ModuleCall and may return a ModuleResponse,
    or any other value which is taken as a successful output.
    """

    def __init__(self, name: str, handler: Callable[[ModuleCall], Awaitable[Any]], description: str = ""):
        self.name = name
        self.description = description or f"Function module {name}"
        self._handler = handler

    async def call(self, request: ModuleCall) -> ModuleResponse:
        result = await self._handler(request)
        if isinstance(result, ModuleResponse):
            return result
        return ModuleResponse(success=True, output=result)

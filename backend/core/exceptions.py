"""Custom exceptions for the chain execution engine."""


class ChainEngineError(Exception):
    """Base exception for the chain execution engine."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ChainEngineError):
    """Malformed chain or step definition. Never retried."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ChainNotFoundError(ChainEngineError):
    """Referenced chain id is not registered."""

    def __init__(self, chain_id: str):
        """Initialize ChainNotFoundError with 404 status code."""
        self.chain_id = chain_id
        super().__init__(f"Chain not found: {chain_id}", 404)


class ExecutionNotFoundError(ChainEngineError):
    """Execution id is not known to the supervisor."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}", 404)


class StepTimeoutError(ChainEngineError):
    """A step attempt exceeded its timeout."""

    retryable = True

    def __init__(self, step_id: str, timeout: float):
        self.step_id = step_id
        self.timeout = timeout
        super().__init__(f"Step {step_id} timed out after {timeout}s", 504)


class CircuitOpenError(ChainEngineError):
    """The circuit breaker for a dependency rejected the call."""

    retryable = True

    def __init__(self, key: str, retry_after: float = 0.0):
        """Initialize CircuitOpenError.

        Args:
            key: Dependency key whose breaker is open
            retry_after: Seconds until the breaker admits a probe
        """
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"Circuit open for {key}", 503)


class ExternalCallError(ChainEngineError):
    """An external collaborator reported failure or raised."""

    retryable = True

    def __init__(self, message: str = "External call failed", target: str = ""):
        self.target = target
        super().__init__(message, 502)


class MaxRecursionDepthExceeded(ChainEngineError):
    """Sub-chain nesting went past the configured limit."""

    def __init__(self, depth: int, limit: int):
        self.depth = depth
        self.limit = limit
        super().__init__(f"Max recursion depth exceeded: depth {depth} > limit {limit}", 422)


class CheckpointIntegrityError(ChainEngineError):
    """A persisted checkpoint failed decryption or digest verification.

    The execution cannot be resumed and needs a manual restart.
    """

    def __init__(self, execution_id: str, reason: str = "integrity check failed"):
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(f"Checkpoint for {execution_id} is not usable: {reason}", 409)


# Errors that end an execution immediately, regardless of routing rules
# or continue_on_error.
TERMINAL_ERRORS = (MaxRecursionDepthExceeded, ChainNotFoundError)

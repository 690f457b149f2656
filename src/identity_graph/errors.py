"""
Identity service exceptions

Normalization never raises; these come from orchestration code only.
"""


class IdentityError(Exception):
    """Base class for identity service failures"""
    status_code = 500


class IdentityValidationError(IdentityError, ValueError):
    """Malformed or missing identifiers, empty or invalid batches"""
    status_code = 400


class ConfigurationError(IdentityError):
    """Deployment problem (store or API key not configured), not a runtime fault"""
    status_code = 500


class StoreError(IdentityError):
    """ClickHouse query, insert or mutation failed"""
    status_code = 500


class PartialIngestionError(StoreError):
    """Event rows were stored but identity edges were not"""

    def __init__(self, inserted_events: int, cause: Exception):
        self.inserted_events = inserted_events
        self.cause = cause
        super().__init__(
            f"Stored {inserted_events} events but identity edge insert failed: {cause}"
        )


class ClosureLimitError(IdentityError):
    """Linked identifier expansion hit a bound before converging"""


class ClosureTimeoutError(ClosureLimitError):
    def __init__(self, timeout_ms: float, elapsed_ms: float):
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Linked identifier expansion timed out after {timeout_ms:g}ms "
            f"(elapsed {elapsed_ms:.0f}ms)"
        )


class ClosureIterationLimitError(ClosureLimitError):
    def __init__(self, max_iterations: int, elapsed_ms: float):
        self.max_iterations = max_iterations
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Linked identifier expansion reached maxIterations={max_iterations} "
            f"before convergence (elapsed {elapsed_ms:.0f}ms)"
        )

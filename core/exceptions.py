"""
Custom exception classes.

Only programmer errors and load-time configuration errors are raised to
callers. Environmental failures (Redis, the external record store) are
logged and degraded by the component that hits them.
"""
from typing import Iterable, Optional


class EngineError(Exception):
    """Base exception with a stable error code."""

    error_code = "ENGINE_ERROR"

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if error_code:
            self.error_code = error_code


class MissingCustomerError(EngineError, ValueError):
    """A completion was recorded without a customer id (caller bug)."""

    error_code = "MISSING_CUSTOMER"

    def __init__(self, task_id: Optional[str] = None):
        detail = "Completion event has no customer_id"
        if task_id:
            detail = f"{detail} (task {task_id})"
        super().__init__(detail)
        self.task_id = task_id


class CatalogValidationError(EngineError):
    """Catalog data references resources or tiers that don't exist."""

    error_code = "CATALOG_INVALID"

    def __init__(self, problems: Iterable[str]):
        self.problems = list(problems)
        super().__init__("Invalid catalog: " + "; ".join(self.problems))


class PersistenceError(EngineError):
    """
    The external record store rejected or failed a write.

    Persister adapters raise it with retryable=False for rejections that
    will not succeed on a retry (bad payload, unknown customer).
    """

    error_code = "PERSISTENCE_FAILED"

    def __init__(self, detail: str, retryable: bool = True, error_code: Optional[str] = None):
        super().__init__(detail, error_code)
        self.retryable = retryable

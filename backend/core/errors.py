"""
Restock error taxonomy.

Ledger errors subclass ValueError so request handlers that already map
ValueError to a 4xx keep working. AI errors are recoverable: the
analysis service catches them and falls back to deterministic results.
"""

from typing import Any


class RestockError(Exception):
    """Base class for every error raised by the restock subsystem."""


class InvalidMovementError(RestockError, ValueError):
    """Malformed movement input, rejected before the ledger is touched."""


class InsufficientStockError(RestockError, ValueError):
    """The movement would violate a stock invariant. Rejected, never clamped."""

    def __init__(self, message: str, *, current_stock: int, requested: int):
        super().__init__(message)
        self.current_stock = current_stock
        self.requested = requested


class PositionNotFoundError(RestockError, LookupError):
    pass


class RecommendationNotFoundError(RestockError, LookupError):
    pass


class AnalysisValidationError(RestockError, ValueError):
    """Analysis inputs failed validation; the run is persisted as failed."""


class AIUnavailableError(RestockError):
    """Transport failure, timeout, non-2xx or unparseable AI payload."""


class InvalidAIResponseError(RestockError):
    """AI payload parsed but its shape or values are out of range."""


class AnalysisConflictError(RestockError):
    """A non-failed analysis already exists for the same key."""

    def __init__(self, existing: Any):
        super().__init__(f"Analysis {existing.id} already exists in status '{existing.status}'")
        self.existing = existing

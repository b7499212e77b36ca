"""
Error taxonomy for the resolution and embedding services.

- transient provider errors (embedding / arbitration calls) are retried by the
  backfill driver and swallowed by the continuous scheduler
- persistence errors are fatal for the current batch or driver run
- lock misuse is a programming error and is never retried
"""
from __future__ import annotations


class ResolutionServiceError(RuntimeError):
    pass


class EmbeddingProviderError(ResolutionServiceError):
    """Raised when the embedding provider call fails. Safe to retry."""

    transient = True


class ArbitrationError(ResolutionServiceError):
    """Raised when the LLM arbitration call fails. Safe to retry."""

    transient = True


class PersistenceError(ResolutionServiceError):
    """Raised when the entity store is unreachable or rejects a query."""

    transient = False


class EntityNotFoundError(ResolutionServiceError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class LockMisuseError(ResolutionServiceError):
    """Raised when processing status is mutated without holding the gate."""


class GateBusyError(ResolutionServiceError):
    """Raised by the gate context manager when another run holds the gate."""


class BackfillAbortedError(ResolutionServiceError):
    def __init__(self, message: str, *, attempts: int, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error

"""
Error taxonomy for mortarbase.

Every failure raised by the storage layer derives from MortarError so that
callers can separate domain errors from driver or programming errors.
"""

from __future__ import annotations

from typing import Any, Optional


class MortarError(Exception):
    """Base class for all mortarbase errors."""
    pass


class ConfigError(MortarError):
    """Raised when injected configuration is missing or malformed."""
    pass


class ValidationError(MortarError):
    """Raised for a malformed stream, dataset, triple batch or query."""
    pass


class AuthorizationError(MortarError):
    """Raised when the caller may not perform an operation on a source."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class MissingIdentityError(AuthorizationError):
    """Raised when the operation context carries no API key at all."""
    pass


class NotFoundError(MortarError):
    """Raised when a referenced stream does not exist."""
    pass


class TransactionError(MortarError):
    """Raised when staging, merging or committing a transaction fails."""
    pass


class RollbackError(TransactionError):
    """
    Raised when a failed transaction could not be rolled back.

    Always fatal: the connection state is unknown and the operation must not
    be retried. Both the original failure and the rollback failure are kept.
    """

    def __init__(self, original: BaseException, rollback_error: BaseException):
        super().__init__(
            f"Error ({original}) occurred during transaction. "
            f"Could not rollback: {rollback_error}"
        )
        self.original = original
        self.rollback_error = rollback_error


class UpstreamError(MortarError):
    """Raised when the reasoner is unreachable or answers with garbage."""
    pass


class OperationCancelled(MortarError):
    """Raised when an operation's context was cancelled."""
    pass


class OperationTimeout(OperationCancelled):
    """Raised when an operation exceeded its deadline."""
    pass


class PartialFailure(MortarError):
    """
    Raised by qualification when some jobs failed.

    ``counts`` holds every result that completed before and after the
    failures; ``errors`` holds the failures themselves.
    """

    def __init__(self, counts: dict[str, list[Optional[int]]], errors: list[BaseException]):
        first = errors[0] if errors else None
        super().__init__(
            f"{len(errors)} qualification job(s) failed; first error: {first}"
        )
        self.counts = counts
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": self.counts,
            "errors": [str(e) for e in self.errors],
        }

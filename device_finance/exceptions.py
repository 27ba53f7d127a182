"""Exception hierarchy for the device financing core."""


class FinanceError(Exception):
    """Base exception for all device financing errors."""


class ValidationError(FinanceError, ValueError):
    """Raised when input to an operation is malformed or violates policy."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [message])


class EntityNotFoundError(ValidationError):
    """Raised when a referenced entity does not exist."""


class InvariantViolationError(FinanceError, ValueError):
    """Raised when a write would break a ledger invariant; nothing is written."""


class InvalidStateError(FinanceError, ValueError):
    """Raised when an entity is in an invalid state for the operation."""


class ConcurrentModificationError(FinanceError):
    """Raised when an append lost a compare-and-append race."""

"""
Typed exceptions for the earnings ledger.

Every error carries a machine-readable ``code`` so the HTTP layer and the
callers of the inbound triggers can branch on type, not on message text.

    EarningsServiceError (base)
    |
    +-- ValidationError
    +-- InsufficientBalanceError
    +-- InvalidStateTransitionError
    +-- NotFoundError
    +-- StoreUnavailableError
"""

from decimal import Decimal
from typing import Optional


class EarningsServiceError(Exception):
    code: str = "EARNINGS_ERROR"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(EarningsServiceError):
    """Malformed input. The operation was not attempted."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, reason: str = "invalid_input"):
        self.reason = reason
        super().__init__(message)


class InsufficientBalanceError(EarningsServiceError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        requested: Decimal,
        available: Decimal,
        reason: str = "insufficient_balance",
        message: Optional[str] = None,
    ):
        self.requested = requested
        self.available = available
        self.reason = reason
        super().__init__(
            message or f"Insufficient balance: requested {requested}, available {available}"
        )


class InvalidStateTransitionError(EarningsServiceError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move from {current} to {target}")


class NotFoundError(EarningsServiceError):
    code = "NOT_FOUND"


class StoreUnavailableError(EarningsServiceError):
    """Persistence is unreachable. Safe to retry."""

    code = "STORE_UNAVAILABLE"
    retryable = True

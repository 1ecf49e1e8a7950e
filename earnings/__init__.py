"""
Doctor Earnings & Withdrawal Ledger

This package provides:
- Append-only earning transactions (consultation, bonus, adjustment, refund debit)
- A balance summary that is always recomputed from the stored records
- Withdrawal lifecycle management: pending → processing → completed / rejected
- Best-effort notifications that never block or fail a ledger write
"""

from .models import (
    EarningType,
    EarningStatus,
    WithdrawalMethod,
    WithdrawalStatus,
    EarningTransaction,
    WithdrawalRequest,
    DoctorEarningsSummary,
)
from .exceptions import (
    EarningsServiceError,
    ValidationError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    StoreUnavailableError,
)
from .service import EarningsService

__all__ = [
    "EarningType",
    "EarningStatus",
    "WithdrawalMethod",
    "WithdrawalStatus",
    "EarningTransaction",
    "WithdrawalRequest",
    "DoctorEarningsSummary",
    "EarningsServiceError",
    "ValidationError",
    "InsufficientBalanceError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "StoreUnavailableError",
    "EarningsService",
]

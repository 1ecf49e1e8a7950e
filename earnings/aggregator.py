"""
Balance aggregation.

The summary is a pure function of the two source-of-truth collections, so a
recompute always starts from nothing and ends with one full-replace write.
Running it twice, or from two triggers at once, converges on the same result.
"""

import threading
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol, Sequence

from .clock import Clock, SystemClock
from .logging_config import get_logger
from .models import (
    ZERO,
    DoctorEarningsSummary,
    EarningStatus,
    EarningTransaction,
    EarningType,
    MonthlyEarnings,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .storage import LedgerStorage

logger = get_logger("aggregator")

CENT = Decimal("0.01")
TENTH = Decimal("0.1")
MONTHS_OF_HISTORY = 12


class RatingsSource(Protocol):
    """Appointment collaborator: ratings of completed appointments in [start, end)."""

    def get_completed_appointment_ratings(
        self, doctor_id: str, start: datetime, end: datetime
    ) -> Sequence[Optional[float]]: ...


class NoRatings:
    def get_completed_appointment_ratings(
        self, doctor_id: str, start: datetime, end: datetime
    ) -> Sequence[Optional[float]]:
        return []


def month_start(moment: datetime, months_back: int = 0) -> datetime:
    """First instant of the calendar month ``months_back`` months before ``moment``."""
    index = moment.year * 12 + (moment.month - 1) - months_back
    return moment.replace(
        year=index // 12, month=index % 12 + 1, day=1,
        hour=0, minute=0, second=0, microsecond=0,
    )


def _sum(amounts: Iterable[Decimal]) -> Decimal:
    return sum(amounts, ZERO)


def average_rating(ratings: Sequence[Optional[float]]) -> Decimal:
    rated = [Decimal(str(r)) for r in ratings if r is not None]
    if not rated:
        return ZERO
    return (_sum(rated) / len(rated)).quantize(TENTH, rounding=ROUND_HALF_UP)


def build_summary(
    doctor_id: str,
    transactions: Sequence[EarningTransaction],
    withdrawals: Sequence[WithdrawalRequest],
    now: datetime,
    ratings: Optional[RatingsSource] = None,
) -> DoctorEarningsSummary:
    ratings = ratings or NoRatings()
    completed = [t for t in transactions if t.status == EarningStatus.COMPLETED]
    consultations = [t for t in completed if t.type == EarningType.CONSULTATION]

    total_earnings = _sum(t.amount for t in completed)
    total_withdrawn = _sum(
        w.amount for w in withdrawals if w.status == WithdrawalStatus.COMPLETED
    )
    reserved = _sum(w.amount for w in withdrawals if w.is_outstanding())
    available = total_earnings - total_withdrawn
    pending_earnings = _sum(
        t.amount for t in transactions if t.status == EarningStatus.PENDING
    )

    total_consultations = len(consultations)
    if total_consultations:
        average = (_sum(t.amount for t in consultations) / total_consultations).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
    else:
        average = ZERO

    def earned_between(start: datetime, end: datetime) -> list[EarningTransaction]:
        return [t for t in completed if start <= t.created_at < end]

    this_month = month_start(now)
    next_month = month_start(now, -1)
    last_month = month_start(now, 1)

    monthly_data = []
    for back in range(MONTHS_OF_HISTORY - 1, -1, -1):
        start = month_start(now, back)
        end = month_start(now, back - 1)
        in_month = earned_between(start, end)
        monthly_data.append(MonthlyEarnings(
            month=f"{start.year}-{start.month:02d}",
            earnings=_sum(t.amount for t in in_month),
            consultations=sum(1 for t in in_month if t.type == EarningType.CONSULTATION),
            average_rating=average_rating(
                ratings.get_completed_appointment_ratings(doctor_id, start, end)
            ),
        ))

    return DoctorEarningsSummary(
        doctor_id=doctor_id,
        total_earnings=total_earnings,
        available_balance=available,
        pending_earnings=pending_earnings,
        total_withdrawn=total_withdrawn,
        reserved_balance=reserved,
        withdrawable_balance=max(available - reserved, ZERO),
        total_consultations=total_consultations,
        average_per_consultation=average,
        this_month_earnings=_sum(t.amount for t in earned_between(this_month, next_month)),
        last_month_earnings=_sum(t.amount for t in earned_between(last_month, this_month)),
        monthly_data=monthly_data,
        last_calculated_at=now,
    )


class BalanceAggregator:
    def __init__(
        self,
        storage: LedgerStorage,
        ratings: Optional[RatingsSource] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.ratings = ratings or NoRatings()
        self.clock = clock or SystemClock()
        # doctors whose stored summary predates a committed write
        self._stale: set[str] = set()
        self._stale_lock = threading.Lock()

    def recompute(self, doctor_id: str) -> DoctorEarningsSummary:
        """
        Rebuild and persist the doctor's summary.

        Everything is read and computed before the single save, so a store
        failure part-way leaves the previously persisted summary untouched.
        """
        transactions = self.storage.list_transactions(doctor_id)
        withdrawals = self.storage.list_withdrawals(doctor_id)
        summary = build_summary(
            doctor_id, transactions, withdrawals, self.clock.now(), self.ratings
        )
        self.storage.save_summary(summary)
        with self._stale_lock:
            self._stale.discard(doctor_id)
        logger.debug(
            "summary recomputed",
            extra={
                "doctor_id": doctor_id,
                "total_earnings": summary.total_earnings,
                "available_balance": summary.available_balance,
            },
        )
        return summary

    def refresh(self, doctor_id: str) -> Optional[DoctorEarningsSummary]:
        """
        Recompute after a write that has already been committed.

        The write stands whatever happens here: a failing store read or
        ratings lookup is logged, the doctor is marked stale, and the next
        summary read recomputes regardless of the cache age.
        """
        try:
            return self.recompute(doctor_id)
        except Exception:
            with self._stale_lock:
                self._stale.add(doctor_id)
            logger.warning(
                "summary refresh failed",
                extra={"doctor_id": doctor_id},
                exc_info=True,
            )
            return None

    def get_summary(self, doctor_id: str, max_age_seconds: int = 0) -> DoctorEarningsSummary:
        """Cached summary if it is fresh enough, otherwise a recompute."""
        with self._stale_lock:
            stale = doctor_id in self._stale
        if max_age_seconds > 0 and not stale:
            cached = self.storage.get_summary(doctor_id)
            if cached is not None:
                age = self.clock.now() - cached.last_calculated_at
                if age <= timedelta(seconds=max_age_seconds):
                    return cached
        return self.recompute(doctor_id)

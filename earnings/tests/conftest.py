from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest

from earnings.clock import DeterministicClock
from earnings.config import Settings
from earnings.models import EarningStatus, WithdrawalStatus
from earnings.notifications import NotificationBridge
from earnings.service import EarningsService
from earnings.storage import InMemoryStorage


DOCTOR_ID = "doc_550e8400"
OTHER_DOCTOR_ID = "doc_660e8400"
CONSULTATION_DATE = datetime(2024, 6, 14, 10, 30, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, recipient: str, event_kind: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("notification service down")
        self.events.append((recipient, event_kind, payload))


def make_service(
    storage=None,
    clock: Optional[DeterministicClock] = None,
    notifier=None,
    ratings=None,
    **settings: Any,
) -> EarningsService:
    return EarningsService(
        storage=storage or InMemoryStorage(),
        notifications=NotificationBridge(notifier or RecordingNotifier(), max_workers=2),
        ratings=ratings,
        clock=clock or DeterministicClock(),
        settings=Settings(**settings),
    )


def record_consultation(
    service: EarningsService,
    amount: str,
    appointment_id: str,
    doctor_id: str = DOCTOR_ID,
    **kwargs: Any,
):
    return service.record_consultation_earning(
        doctor_id=doctor_id,
        appointment_id=appointment_id,
        patient_id=f"pat_{appointment_id}",
        patient_name="Sarah Johnson",
        amount=Decimal(amount),
        consultation_date=CONSULTATION_DATE,
        **kwargs,
    )


def assert_balance_invariants(service: EarningsService, doctor_id: str = DOCTOR_ID) -> None:
    """available == completed earnings - completed withdrawals, and never negative."""
    summary = service.recalculate_summary(doctor_id)
    earned = sum(
        (t.amount for t in service.storage.list_transactions(doctor_id)
         if t.status == EarningStatus.COMPLETED),
        Decimal("0"),
    )
    withdrawn = sum(
        (w.amount for w in service.storage.list_withdrawals(doctor_id)
         if w.status == WithdrawalStatus.COMPLETED),
        Decimal("0"),
    )
    assert summary.available_balance == earned - withdrawn
    assert summary.available_balance >= 0


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(clock, notifier):
    svc = make_service(clock=clock, notifier=notifier)
    yield svc
    svc.shutdown()

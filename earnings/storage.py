import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from uuid import UUID

from .models import (
    EarningStatus,
    EarningTransaction,
    WithdrawalRequest,
    WithdrawalStatus,
    DoctorEarningsSummary,
)


class LedgerStorage(ABC):
    """
    Persistence contract for the two source-of-truth collections
    (earning transactions, withdrawal requests) and the derived summary.

    Every write is atomic on its own. Completed transactions only ever change
    status/metadata through ``set_transaction_status``; amount and type have
    no update path.
    """

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._doctor_locks: dict[str, threading.RLock] = {}

    @contextmanager
    def doctor_lock(self, doctor_id: str) -> Iterator[None]:
        """Serialize check-then-write sequences for one doctor."""
        with self._locks_guard:
            lock = self._doctor_locks.setdefault(doctor_id, threading.RLock())
        with lock:
            yield

    # earning transactions

    @abstractmethod
    def add_transaction(self, transaction: EarningTransaction) -> None: ...

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[EarningTransaction]: ...

    @abstractmethod
    def find_consultation_transaction(
        self, doctor_id: str, appointment_id: str
    ) -> Optional[EarningTransaction]: ...

    @abstractmethod
    def set_transaction_status(
        self,
        transaction_id: UUID,
        status: EarningStatus,
        metadata_updates: Optional[dict[str, Any]] = None,
    ) -> EarningTransaction: ...

    @abstractmethod
    def list_transactions(self, doctor_id: str) -> list[EarningTransaction]: ...

    @abstractmethod
    def page_transactions(
        self, doctor_id: str, limit: int, offset: int
    ) -> tuple[list[EarningTransaction], int]: ...

    # withdrawal requests

    @abstractmethod
    def add_withdrawal(self, withdrawal: WithdrawalRequest) -> None: ...

    @abstractmethod
    def get_withdrawal(self, request_id: str) -> Optional[WithdrawalRequest]: ...

    @abstractmethod
    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> None: ...

    @abstractmethod
    def list_withdrawals(self, doctor_id: str) -> list[WithdrawalRequest]: ...

    @abstractmethod
    def page_withdrawals(
        self,
        doctor_id: Optional[str],
        status: Optional[WithdrawalStatus],
        limit: int,
        offset: int,
    ) -> tuple[list[WithdrawalRequest], int]: ...

    # derived summary

    @abstractmethod
    def get_summary(self, doctor_id: str) -> Optional[DoctorEarningsSummary]: ...

    @abstractmethod
    def save_summary(self, summary: DoctorEarningsSummary) -> None: ...


def _newest_first(rows: list[dict]) -> list[dict]:
    # rows arrive in insertion order; reversing first keeps later inserts
    # ahead of earlier ones that share a timestamp
    return sorted(reversed(rows), key=lambda r: r["created_at"], reverse=True)


class InMemoryStorage(LedgerStorage):
    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self.earning_transactions: dict[UUID, dict] = {}
        self.withdrawal_requests: dict[str, dict] = {}
        self.summaries: dict[str, dict] = {}

    def add_transaction(self, transaction: EarningTransaction) -> None:
        with self._lock:
            self.earning_transactions[transaction.id] = transaction.model_dump()

    def get_transaction(self, transaction_id: UUID) -> Optional[EarningTransaction]:
        with self._lock:
            data = self.earning_transactions.get(transaction_id)
            return EarningTransaction(**data) if data else None

    def find_consultation_transaction(
        self, doctor_id: str, appointment_id: str
    ) -> Optional[EarningTransaction]:
        with self._lock:
            for data in self.earning_transactions.values():
                if (
                    data["doctor_id"] == doctor_id
                    and data["appointment_id"] == appointment_id
                    and data["type"] == "CONSULTATION"
                ):
                    return EarningTransaction(**data)
        return None

    def set_transaction_status(
        self,
        transaction_id: UUID,
        status: EarningStatus,
        metadata_updates: Optional[dict[str, Any]] = None,
    ) -> EarningTransaction:
        with self._lock:
            data = self.earning_transactions[transaction_id]
            updated = dict(data)
            updated["status"] = status
            updated["metadata"] = {**data["metadata"], **(metadata_updates or {})}
            self.earning_transactions[transaction_id] = updated
            return EarningTransaction(**updated)

    def list_transactions(self, doctor_id: str) -> list[EarningTransaction]:
        with self._lock:
            return [
                EarningTransaction(**e) for e in self.earning_transactions.values()
                if e["doctor_id"] == doctor_id
            ]

    def page_transactions(
        self, doctor_id: str, limit: int, offset: int
    ) -> tuple[list[EarningTransaction], int]:
        with self._lock:
            rows = [e for e in self.earning_transactions.values() if e["doctor_id"] == doctor_id]
        rows = _newest_first(rows)
        return [EarningTransaction(**e) for e in rows[offset:offset + limit]], len(rows)

    def add_withdrawal(self, withdrawal: WithdrawalRequest) -> None:
        with self._lock:
            if withdrawal.request_id in self.withdrawal_requests:
                raise ValueError(f"Duplicate withdrawal request id {withdrawal.request_id}")
            self.withdrawal_requests[withdrawal.request_id] = withdrawal.model_dump()

    def get_withdrawal(self, request_id: str) -> Optional[WithdrawalRequest]:
        with self._lock:
            data = self.withdrawal_requests.get(request_id)
            return WithdrawalRequest(**data) if data else None

    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> None:
        with self._lock:
            self.withdrawal_requests[withdrawal.request_id] = withdrawal.model_dump()

    def list_withdrawals(self, doctor_id: str) -> list[WithdrawalRequest]:
        with self._lock:
            return [
                WithdrawalRequest(**w) for w in self.withdrawal_requests.values()
                if w["doctor_id"] == doctor_id
            ]

    def page_withdrawals(
        self,
        doctor_id: Optional[str],
        status: Optional[WithdrawalStatus],
        limit: int,
        offset: int,
    ) -> tuple[list[WithdrawalRequest], int]:
        with self._lock:
            rows = [
                w for w in self.withdrawal_requests.values()
                if (doctor_id is None or w["doctor_id"] == doctor_id)
                and (status is None or w["status"] == status)
            ]
        rows = _newest_first(rows)
        return [WithdrawalRequest(**w) for w in rows[offset:offset + limit]], len(rows)

    def get_summary(self, doctor_id: str) -> Optional[DoctorEarningsSummary]:
        with self._lock:
            data = self.summaries.get(doctor_id)
            return DoctorEarningsSummary(**data) if data else None

    def save_summary(self, summary: DoctorEarningsSummary) -> None:
        with self._lock:
            self.summaries[summary.doctor_id] = summary.model_dump()

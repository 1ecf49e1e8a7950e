from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from .aggregator import BalanceAggregator, RatingsSource
from .clock import Clock, SystemClock
from .config import Settings
from .exceptions import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .logging_config import get_logger
from .models import (
    DoctorEarningsSummary,
    EarningStatus,
    EarningTransaction,
    EarningType,
    TransactionPage,
    WithdrawalPage,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .notifications import EventKind, NotificationBridge
from .storage import InMemoryStorage, LedgerStorage
from .validation import check_page, positive_amount, to_amount
from .workflow import WithdrawalWorkflow

logger = get_logger("service")

# admin UI verbs -> withdrawal status
DECISIONS = {
    "approve": WithdrawalStatus.PROCESSING,
    "reject": WithdrawalStatus.REJECTED,
    "complete": WithdrawalStatus.COMPLETED,
}


class EarningsService:
    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        notifications: Optional[NotificationBridge] = None,
        ratings: Optional[RatingsSource] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.notifications = notifications or NotificationBridge(
            max_workers=self.settings.notification_workers,
            max_pending=self.settings.notification_max_pending,
        )
        self.aggregator = BalanceAggregator(self.storage, ratings=ratings, clock=self.clock)
        self.withdrawals = WithdrawalWorkflow(
            self.storage,
            self.aggregator,
            self.notifications,
            minimum_withdrawal=self.settings.minimum_withdrawal,
            clock=self.clock,
        )

    # ---- recording -------------------------------------------------------

    def record_consultation_earning(
        self,
        doctor_id: str,
        appointment_id: str,
        patient_id: str,
        patient_name: str,
        amount: Any,
        consultation_date: datetime,
        consultation_type: str = "video",
        hold: bool = False,
    ) -> EarningTransaction:
        amount = positive_amount(amount)

        with self.storage.doctor_lock(doctor_id):
            existing = self.storage.find_consultation_transaction(doctor_id, appointment_id)
            if existing:
                logger.info(
                    "consultation already credited",
                    extra={"doctor_id": doctor_id, "appointment_id": appointment_id},
                )
                return existing

            transaction = self._append(
                doctor_id,
                EarningType.CONSULTATION,
                amount,
                description=f"Consultation with {patient_name}",
                status=EarningStatus.PENDING if hold else EarningStatus.COMPLETED,
                appointment_id=appointment_id,
                patient_id=patient_id,
                patient_name=patient_name,
                consultation_date=consultation_date,
                metadata={"consultation_type": consultation_type, "original_amount": str(amount)},
            )

        self.notifications.notify(
            doctor_id,
            EventKind.EARNING_ADDED,
            amount=str(amount),
            appointment_id=appointment_id,
        )
        return transaction

    def record_bonus_earning(self, doctor_id: str, amount: Any, reason: str) -> EarningTransaction:
        amount = positive_amount(amount)
        with self.storage.doctor_lock(doctor_id):
            transaction = self._append(
                doctor_id,
                EarningType.BONUS,
                amount,
                description=f"Bonus: {reason}",
                metadata={"bonus_reason": reason, "original_amount": str(amount)},
            )
        self.notifications.notify(doctor_id, EventKind.BONUS_ADDED, amount=str(amount), reason=reason)
        return transaction

    def record_adjustment(
        self,
        doctor_id: str,
        amount: Any,
        reason: str,
        performed_by: Optional[str] = None,
    ) -> EarningTransaction:
        amount = to_amount(amount)
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero", reason="zero_adjustment")
        with self.storage.doctor_lock(doctor_id):
            self._guard_balance(doctor_id, amount)
            return self._append(
                doctor_id,
                EarningType.ADJUSTMENT,
                amount,
                description=f"Adjustment: {reason}",
                metadata={"adjustment_reason": reason, "performed_by": performed_by},
            )

    def record_refund_debit(
        self,
        doctor_id: str,
        amount: Any,
        reason: str,
        appointment_id: Optional[str] = None,
    ) -> EarningTransaction:
        debit = -positive_amount(amount)
        with self.storage.doctor_lock(doctor_id):
            self._guard_balance(doctor_id, debit)
            return self._append(
                doctor_id,
                EarningType.REFUND_DEBIT,
                debit,
                description=f"Refund: {reason}",
                appointment_id=appointment_id,
                metadata={"refund_reason": reason},
            )

    def void_transaction(
        self,
        transaction_id: UUID,
        reason: str,
        performed_by: Optional[str] = None,
    ) -> EarningTransaction:
        transaction = self.get_transaction(transaction_id)
        with self.storage.doctor_lock(transaction.doctor_id):
            transaction = self.get_transaction(transaction_id)
            if not transaction.can_void():
                raise InvalidStateTransitionError(
                    current=transaction.status.value,
                    target=EarningStatus.VOIDED.value,
                    message=f"Transaction {transaction_id} is already voided",
                )
            if transaction.status == EarningStatus.COMPLETED:
                self._guard_balance(transaction.doctor_id, -transaction.amount)

            voided = self.storage.set_transaction_status(
                transaction_id,
                EarningStatus.VOIDED,
                {
                    "void_reason": reason,
                    "voided_by": performed_by,
                    "voided_at": self.clock.now().isoformat(),
                },
            )
            self.aggregator.refresh(transaction.doctor_id)

        logger.info(
            "transaction voided",
            extra={
                "doctor_id": transaction.doctor_id,
                "transaction_id": transaction_id,
                "amount": transaction.amount,
                "reason": reason,
            },
        )
        return voided

    def settle_transaction(self, transaction_id: UUID) -> EarningTransaction:
        transaction = self.get_transaction(transaction_id)
        with self.storage.doctor_lock(transaction.doctor_id):
            transaction = self.get_transaction(transaction_id)
            if not transaction.can_settle():
                raise InvalidStateTransitionError(
                    current=transaction.status.value,
                    target=EarningStatus.COMPLETED.value,
                )
            settled = self.storage.set_transaction_status(
                transaction_id,
                EarningStatus.COMPLETED,
                {"settled_at": self.clock.now().isoformat()},
            )
            self.aggregator.refresh(transaction.doctor_id)
        return settled

    # ---- queries ---------------------------------------------------------

    def get_transaction(self, transaction_id: UUID) -> EarningTransaction:
        transaction = self.storage.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def list_transactions(self, doctor_id: str, limit: int = 50, offset: int = 0) -> TransactionPage:
        check_page(limit, offset)
        items, total = self.storage.page_transactions(doctor_id, limit, offset)
        return TransactionPage(
            doctor_id=doctor_id, items=items, total_count=total, limit=limit, offset=offset
        )

    def get_summary(self, doctor_id: str) -> DoctorEarningsSummary:
        return self.aggregator.get_summary(doctor_id, self.settings.summary_max_age_seconds)

    def recalculate_summary(self, doctor_id: str) -> DoctorEarningsSummary:
        return self.aggregator.recompute(doctor_id)

    # ---- withdrawals -----------------------------------------------------

    def create_withdrawal_request(
        self,
        doctor_id: str,
        amount: Any,
        method: Any,
        payment_details: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        return self.withdrawals.create_withdrawal_request(
            doctor_id, amount, method, payment_details, notes
        )

    def process_withdrawal_request(
        self,
        request_id: str,
        new_status: Any,
        admin_notes: Optional[str] = None,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> WithdrawalRequest:
        return self.withdrawals.process_withdrawal_request(
            request_id, new_status, admin_notes, transaction_id, failure_reason
        )

    def get_withdrawal_request(self, request_id: str) -> WithdrawalRequest:
        return self.withdrawals.get_withdrawal_request(request_id)

    def list_withdrawal_requests(
        self, doctor_id: str, limit: int = 20, offset: int = 0
    ) -> WithdrawalPage:
        return self.withdrawals.list_withdrawal_requests(doctor_id, limit, offset)

    def list_withdrawals_for_review(
        self, status: Any = None, limit: int = 50, offset: int = 0
    ) -> WithdrawalPage:
        return self.withdrawals.list_withdrawals_for_review(status, limit, offset)

    # ---- inbound triggers ------------------------------------------------

    def on_consultation_completed(
        self,
        doctor_id: str,
        appointment_id: str,
        patient_id: str,
        patient_name: str,
        amount: Any,
        consultation_date: datetime,
        consultation_type: str = "video",
    ) -> EarningTransaction:
        return self.record_consultation_earning(
            doctor_id, appointment_id, patient_id, patient_name,
            amount, consultation_date, consultation_type,
        )

    def on_withdrawal_decision(
        self,
        request_id: str,
        decision: str,
        notes: Optional[str] = None,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> WithdrawalRequest:
        status = DECISIONS.get(decision.lower(), decision) if isinstance(decision, str) else decision
        return self.process_withdrawal_request(
            request_id, status, admin_notes=notes,
            transaction_id=transaction_id, failure_reason=failure_reason,
        )

    # ---- internals -------------------------------------------------------

    def _append(
        self,
        doctor_id: str,
        earning_type: EarningType,
        amount: Decimal,
        description: str,
        status: EarningStatus = EarningStatus.COMPLETED,
        **fields: Any,
    ) -> EarningTransaction:
        transaction = EarningTransaction(
            id=uuid4(),
            doctor_id=doctor_id,
            type=earning_type,
            amount=amount,
            description=description,
            status=status,
            created_at=self.clock.now(),
            **fields,
        )
        # a failed write propagates so the triggering event is not acknowledged
        self.storage.add_transaction(transaction)
        self.aggregator.refresh(doctor_id)
        logger.info(
            "earning recorded",
            extra={
                "doctor_id": doctor_id,
                "transaction_id": transaction.id,
                "type": earning_type.value,
                "amount": amount,
                "status": status.value,
            },
        )
        return transaction

    def _guard_balance(self, doctor_id: str, delta: Decimal) -> None:
        """Refuse a debit that would take the available balance below zero."""
        if delta >= 0:
            return
        summary = self.aggregator.recompute(doctor_id)
        if summary.available_balance + delta < 0:
            raise InsufficientBalanceError(
                requested=-delta,
                available=summary.available_balance,
                reason="would_overdraw",
            )

    def shutdown(self) -> None:
        self.notifications.shutdown()

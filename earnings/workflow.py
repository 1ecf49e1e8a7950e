from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from .aggregator import BalanceAggregator
from .clock import Clock, SystemClock
from .exceptions import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .logging_config import get_logger
from .models import (
    WithdrawalMethod,
    WithdrawalPage,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .notifications import EventKind, NotificationBridge
from .storage import LedgerStorage
from .validation import check_page, parse_enum, positive_amount

logger = get_logger("workflow")

DEFAULT_MINIMUM_WITHDRAWAL = Decimal("10")


class WithdrawalWorkflow:
    """
    Withdrawal state machine:

        pending -> processing -> completed
           |           |
           +--> rejected <--+

    Pending and processing requests reserve funds: a new request, and every
    forward move of an existing one, is checked against the available balance
    minus everything else still outstanding.
    """

    def __init__(
        self,
        storage: LedgerStorage,
        aggregator: BalanceAggregator,
        notifications: NotificationBridge,
        minimum_withdrawal: Decimal = DEFAULT_MINIMUM_WITHDRAWAL,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.aggregator = aggregator
        self.notifications = notifications
        self.minimum_withdrawal = minimum_withdrawal
        self.clock = clock or SystemClock()

    def create_withdrawal_request(
        self,
        doctor_id: str,
        amount: Any,
        method: Any,
        payment_details: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        method = parse_enum(WithdrawalMethod, method, reason="invalid_method")
        amount = positive_amount(amount)
        if amount < self.minimum_withdrawal:
            raise ValidationError(
                f"Minimum withdrawal amount is {self.minimum_withdrawal}",
                reason="below_minimum",
            )

        with self.storage.doctor_lock(doctor_id):
            # fresh recompute, never a cached summary
            summary = self.aggregator.recompute(doctor_id)
            if amount > summary.withdrawable_balance:
                raise InsufficientBalanceError(
                    requested=amount,
                    available=summary.withdrawable_balance,
                    reason="insufficient_balance",
                )

            now = self.clock.now()
            withdrawal = WithdrawalRequest(
                id=uuid4(),
                request_id=f"WR_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}",
                doctor_id=doctor_id,
                amount=amount,
                method=method,
                payment_details=dict(payment_details or {}),
                notes=notes,
                status=WithdrawalStatus.PENDING,
                request_date=now,
                created_at=now,
            )
            self.storage.add_withdrawal(withdrawal)
            self.aggregator.refresh(doctor_id)

        logger.info(
            "withdrawal requested",
            extra={
                "doctor_id": doctor_id,
                "request_id": withdrawal.request_id,
                "amount": amount,
                "method": method.value,
            },
        )
        self.notifications.notify(
            doctor_id,
            EventKind.WITHDRAWAL_REQUESTED,
            amount=str(amount),
            request_id=withdrawal.request_id,
        )
        return withdrawal

    def process_withdrawal_request(
        self,
        request_id: str,
        new_status: Any,
        admin_notes: Optional[str] = None,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> WithdrawalRequest:
        target = parse_enum(WithdrawalStatus, new_status, reason="invalid_status")
        existing = self.get_withdrawal_request(request_id)

        with self.storage.doctor_lock(existing.doctor_id):
            withdrawal = self.get_withdrawal_request(request_id)
            if not withdrawal.can_transition_to(target):
                raise InvalidStateTransitionError(
                    current=withdrawal.status.value,
                    target=target.value,
                    message=(
                        f"Cannot move withdrawal {request_id} from "
                        f"{withdrawal.status.value} to {target.value}"
                    ),
                )
            if (
                target == WithdrawalStatus.REJECTED
                and withdrawal.status == WithdrawalStatus.PROCESSING
                and not failure_reason
            ):
                raise ValidationError(
                    "failure_reason is required when rejecting a processing withdrawal",
                    reason="missing_failure_reason",
                )

            if target in (WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED):
                summary = self.aggregator.recompute(withdrawal.doctor_id)
                held_by_others = summary.reserved_balance - withdrawal.amount
                headroom = summary.available_balance - held_by_others
                if withdrawal.amount > headroom:
                    raise InsufficientBalanceError(
                        requested=withdrawal.amount,
                        available=max(headroom, Decimal("0")),
                        reason="insufficient_balance_at_approval",
                    )

            now = self.clock.now()
            updates: dict[str, Any] = {"status": target}
            if target == WithdrawalStatus.PROCESSING:
                updates["processed_date"] = now
            elif target == WithdrawalStatus.COMPLETED:
                updates["completed_date"] = now
            else:
                updates["rejected_date"] = now
            if admin_notes is not None:
                updates["admin_notes"] = admin_notes
            if transaction_id is not None:
                updates["transaction_id"] = transaction_id
            if failure_reason is not None:
                updates["failure_reason"] = failure_reason

            withdrawal = withdrawal.model_copy(update=updates)
            self.storage.save_withdrawal(withdrawal)
            self.aggregator.refresh(withdrawal.doctor_id)

        logger.info(
            "withdrawal status changed",
            extra={
                "doctor_id": withdrawal.doctor_id,
                "request_id": request_id,
                "from_status": existing.status.value,
                "to_status": target.value,
            },
        )
        self.notifications.notify(
            withdrawal.doctor_id,
            EventKind.WITHDRAWAL_STATUS_UPDATE,
            status=target.value,
            request_id=request_id,
        )
        return withdrawal

    def get_withdrawal_request(self, request_id: str) -> WithdrawalRequest:
        withdrawal = self.storage.get_withdrawal(request_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal request {request_id} not found")
        return withdrawal

    def list_withdrawal_requests(
        self, doctor_id: str, limit: int = 20, offset: int = 0
    ) -> WithdrawalPage:
        check_page(limit, offset)
        items, total = self.storage.page_withdrawals(doctor_id, None, limit, offset)
        return WithdrawalPage(
            doctor_id=doctor_id, items=items, total_count=total, limit=limit, offset=offset
        )

    def list_withdrawals_for_review(
        self, status: Any = None, limit: int = 50, offset: int = 0
    ) -> WithdrawalPage:
        check_page(limit, offset)
        status = parse_enum(WithdrawalStatus, status, reason="invalid_status") if status else None
        items, total = self.storage.page_withdrawals(None, status, limit, offset)
        return WithdrawalPage(items=items, total_count=total, limit=limit, offset=offset)

"""
Unit Tests for the withdrawal workflow

Tests cover:
1. Request creation and balance checks (minimum, exact, over by a cent)
2. State transitions: pending → processing → completed / rejected
3. Reservation of funds by outstanding requests
4. Admin decisions and review queue
5. Balance invariants after mixed sequences
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from earnings.exceptions import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from earnings.models import WithdrawalMethod, WithdrawalStatus
from earnings.notifications import EventKind
from earnings.storage import InMemoryStorage

from conftest import (
    DOCTOR_ID,
    OTHER_DOCTOR_ID,
    assert_balance_invariants,
    make_service,
    record_consultation,
)


BANK_DETAILS = {
    "account_holder_name": "John Smith",
    "account_number": "1234567890",
    "routing_number": "123456789",
    "bank_name": "Example Bank",
}


def fund(service, amount: str = "100", doctor_id: str = DOCTOR_ID):
    record_consultation(service, amount, f"apt_fund_{doctor_id}_{amount}", doctor_id=doctor_id)


class TestCreateWithdrawal:
    """Tests for withdrawal request creation."""

    def test_create_withdrawal_success(self, service, notifier):
        """Test a valid request is stored as pending without moving the balance."""
        fund(service)

        withdrawal = service.create_withdrawal_request(
            DOCTOR_ID, Decimal("40"), "bank_transfer", BANK_DETAILS, notes="Monthly payout"
        )

        assert withdrawal.status == WithdrawalStatus.PENDING
        assert withdrawal.method == WithdrawalMethod.BANK_TRANSFER
        assert withdrawal.request_id.startswith("WR_")
        assert withdrawal.payment_details == BANK_DETAILS
        assert withdrawal.notes == "Monthly payout"

        summary = service.get_summary(DOCTOR_ID)
        assert summary.available_balance == Decimal("100")
        assert summary.reserved_balance == Decimal("40")
        assert summary.withdrawable_balance == Decimal("60")
        assert summary.total_withdrawn == Decimal("0")

        service.notifications.shutdown()
        assert (
            DOCTOR_ID,
            EventKind.WITHDRAWAL_REQUESTED,
            {"amount": "40", "request_id": withdrawal.request_id},
        ) in notifier.events

    def test_request_ids_are_unique(self, service):
        """Test every request gets its own id."""
        fund(service)
        ids = {
            service.create_withdrawal_request(DOCTOR_ID, Decimal("10"), "upi", {"upi_id": "dr@upi"}).request_id
            for _ in range(5)
        }
        assert len(ids) == 5

    def test_exact_available_balance_succeeds(self, service):
        """Test withdrawing the whole balance is allowed."""
        fund(service)

        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("100"), "paypal")

        assert withdrawal.amount == Decimal("100")

    def test_one_cent_over_fails(self, service):
        """Test one cent over the balance is refused and nothing is stored."""
        fund(service)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.create_withdrawal_request(DOCTOR_ID, Decimal("100.01"), "paypal")

        assert exc_info.value.reason == "insufficient_balance"
        assert exc_info.value.available == Decimal("100")
        assert service.list_withdrawal_requests(DOCTOR_ID).total_count == 0

    def test_more_than_balance_fails(self, service):
        """Test 150 against a balance of 100 creates no request."""
        fund(service)

        with pytest.raises(InsufficientBalanceError):
            service.create_withdrawal_request(DOCTOR_ID, Decimal("150"), "bank_transfer", BANK_DETAILS)

        assert service.storage.list_withdrawals(DOCTOR_ID) == []

    def test_below_minimum_fails(self, service):
        """Test requests under the minimum are a validation error, not a balance error."""
        fund(service)

        with pytest.raises(ValidationError) as exc_info:
            service.create_withdrawal_request(DOCTOR_ID, Decimal("9.99"), "paypal")

        assert exc_info.value.reason == "below_minimum"

    def test_minimum_is_configurable(self, clock):
        """Test the minimum withdrawal comes from settings."""
        service = make_service(clock=clock, minimum_withdrawal=Decimal("50"))
        fund(service)

        with pytest.raises(ValidationError):
            service.create_withdrawal_request(DOCTOR_ID, Decimal("49"), "paypal")
        assert service.create_withdrawal_request(DOCTOR_ID, Decimal("50"), "paypal").amount == Decimal("50")

    def test_unknown_method_fails(self, service):
        """Test only bank_transfer, paypal and upi are accepted."""
        fund(service)

        with pytest.raises(ValidationError) as exc_info:
            service.create_withdrawal_request(DOCTOR_ID, Decimal("20"), "check")

        assert exc_info.value.reason == "invalid_method"

    def test_balance_read_fresh_not_from_cache(self, clock):
        """Test the balance check sees earnings even when reads are cached."""
        service = make_service(clock=clock, summary_max_age_seconds=3600)
        fund(service)
        # leave a stale cached summary behind
        service.storage.save_summary(service.storage.get_summary(DOCTOR_ID).model_copy(
            update={"available_balance": Decimal("0"), "withdrawable_balance": Decimal("0")}
        ))

        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("100"), "paypal")

        assert withdrawal.status == WithdrawalStatus.PENDING


class TestWithdrawalTransitions:
    """Tests for the admin-driven state machine."""

    def test_full_payout_flow(self, service, notifier):
        """Test pending → processing → completed moves the money out."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "bank_transfer", BANK_DETAILS)

        processing = service.process_withdrawal_request(withdrawal.request_id, "processing", admin_notes="Queued")
        assert processing.status == WithdrawalStatus.PROCESSING
        assert processing.processed_date is not None
        assert service.get_summary(DOCTOR_ID).available_balance == Decimal("100")

        completed = service.process_withdrawal_request(
            withdrawal.request_id, WithdrawalStatus.COMPLETED, transaction_id="TXN-8842"
        )
        assert completed.status == WithdrawalStatus.COMPLETED
        assert completed.completed_date is not None
        assert completed.transaction_id == "TXN-8842"
        assert completed.admin_notes == "Queued"

        summary = service.get_summary(DOCTOR_ID)
        assert summary.total_withdrawn == Decimal("40")
        assert summary.available_balance == Decimal("60")
        assert summary.reserved_balance == Decimal("0")

        service.notifications.shutdown()
        statuses = [p["status"] for _, kind, p in notifier.events if kind == EventKind.WITHDRAWAL_STATUS_UPDATE]
        assert statuses == ["processing", "completed"]

    def test_cannot_skip_processing(self, service):
        """Test pending cannot jump straight to completed."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")

        with pytest.raises(InvalidStateTransitionError):
            service.process_withdrawal_request(withdrawal.request_id, "completed")

        assert service.get_withdrawal_request(withdrawal.request_id).status == WithdrawalStatus.PENDING

    @pytest.mark.parametrize("target", ["pending", "processing", "completed", "rejected"])
    def test_completed_is_terminal(self, service, target):
        """Test nothing leaves the completed state."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")
        service.process_withdrawal_request(withdrawal.request_id, "processing")
        service.process_withdrawal_request(withdrawal.request_id, "completed")

        with pytest.raises(InvalidStateTransitionError):
            service.process_withdrawal_request(withdrawal.request_id, target)

    @pytest.mark.parametrize("target", ["pending", "processing", "completed"])
    def test_rejected_is_terminal(self, service, target):
        """Test nothing leaves the rejected state."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")
        service.process_withdrawal_request(withdrawal.request_id, "rejected", admin_notes="Details mismatch")

        with pytest.raises(InvalidStateTransitionError):
            service.process_withdrawal_request(withdrawal.request_id, target)

    def test_reject_from_processing_needs_reason(self, service):
        """Test a failed payout must say why."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")
        service.process_withdrawal_request(withdrawal.request_id, "processing")

        with pytest.raises(ValidationError):
            service.process_withdrawal_request(withdrawal.request_id, "rejected")

        rejected = service.process_withdrawal_request(
            withdrawal.request_id, "rejected", failure_reason="PayPal account closed"
        )
        assert rejected.status == WithdrawalStatus.REJECTED
        assert rejected.failure_reason == "PayPal account closed"
        assert rejected.rejected_date is not None
        assert service.get_summary(DOCTOR_ID).withdrawable_balance == Decimal("100")

    def test_unknown_request(self, service):
        """Test processing a non-existent request fails."""
        with pytest.raises(NotFoundError):
            service.process_withdrawal_request("WR_0_missing", "processing")

    def test_unknown_status(self, service):
        """Test an unrecognised target status is a validation error."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")

        with pytest.raises(ValidationError):
            service.process_withdrawal_request(withdrawal.request_id, "approved")

    def test_balance_rechecked_at_approval(self, service):
        """Test a request that no longer fits the balance cannot be approved."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")
        service.record_refund_debit(DOCTOR_ID, Decimal("70"), "Patient refund")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.process_withdrawal_request(withdrawal.request_id, "processing")

        assert exc_info.value.reason == "insufficient_balance_at_approval"
        assert service.get_withdrawal_request(withdrawal.request_id).status == WithdrawalStatus.PENDING


class TestReservation:
    """Tests for funds held by outstanding requests."""

    def test_overlapping_requests_cannot_exceed_balance(self, service):
        """Test two pending requests cannot jointly overdraw."""
        fund(service)
        first = service.create_withdrawal_request(DOCTOR_ID, Decimal("60"), "paypal")

        with pytest.raises(InsufficientBalanceError):
            service.create_withdrawal_request(DOCTOR_ID, Decimal("50"), "paypal")
        service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "upi")

        service.process_withdrawal_request(first.request_id, "rejected", admin_notes="Duplicate")
        assert service.get_summary(DOCTOR_ID).withdrawable_balance == Decimal("60")

    def test_concurrent_requests_respect_balance(self, service):
        """Test racing requests never reserve more than the balance."""
        fund(service)

        def attempt(_):
            try:
                service.create_withdrawal_request(DOCTOR_ID, Decimal("30"), "paypal")
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(pool.map(attempt, range(5)))

        assert results.count(True) == 3
        assert service.get_summary(DOCTOR_ID).reserved_balance == Decimal("90")

    def test_two_processing_requests_complete_in_turn(self, service):
        """Test completing one processing request leaves room for the other."""
        fund(service)
        a = service.create_withdrawal_request(DOCTOR_ID, Decimal("60"), "paypal")
        b = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")
        service.process_withdrawal_request(a.request_id, "processing")
        service.process_withdrawal_request(b.request_id, "processing")

        service.process_withdrawal_request(a.request_id, "completed")
        service.process_withdrawal_request(b.request_id, "completed")

        summary = service.get_summary(DOCTOR_ID)
        assert summary.total_withdrawn == Decimal("100")
        assert summary.available_balance == Decimal("0")
        assert_balance_invariants(service)


class TestDecisionsAndQueries:
    """Tests for the admin decision trigger and listings."""

    def test_admin_decision_verbs(self, service):
        """Test approve and complete map onto the state machine."""
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("25"), "upi", {"upi_id": "dr@upi"})

        approved = service.on_withdrawal_decision(withdrawal.request_id, "approve", notes="Verified")
        assert approved.status == WithdrawalStatus.PROCESSING

        done = service.on_withdrawal_decision(withdrawal.request_id, "complete", transaction_id="UPI-1")
        assert done.status == WithdrawalStatus.COMPLETED
        assert service.get_summary(DOCTOR_ID).available_balance == Decimal("75")

    def test_review_queue_filters_by_status(self, service, clock):
        """Test the admin queue spans doctors and filters by status."""
        fund(service)
        fund(service, doctor_id=OTHER_DOCTOR_ID)
        a = service.create_withdrawal_request(DOCTOR_ID, Decimal("20"), "paypal")
        clock.advance(10)
        b = service.create_withdrawal_request(OTHER_DOCTOR_ID, Decimal("30"), "paypal")
        clock.advance(10)
        c = service.create_withdrawal_request(DOCTOR_ID, Decimal("10"), "paypal")
        service.process_withdrawal_request(c.request_id, "processing")

        pending = service.list_withdrawals_for_review("pending")
        assert [w.request_id for w in pending.items] == [b.request_id, a.request_id]

        everything = service.list_withdrawals_for_review()
        assert everything.total_count == 3

        mine = service.list_withdrawal_requests(DOCTOR_ID)
        assert [w.request_id for w in mine.items] == [c.request_id, a.request_id]

    def test_invariants_after_mixed_sequence(self, service, clock):
        """Test available balance stays equal to earnings minus payouts throughout."""
        fund(service, "80")
        service.record_bonus_earning(DOCTOR_ID, Decimal("20"), "Referral")
        assert_balance_invariants(service)

        w1 = service.create_withdrawal_request(DOCTOR_ID, Decimal("50"), "paypal")
        service.process_withdrawal_request(w1.request_id, "processing")
        assert_balance_invariants(service)

        record_consultation(service, "35", "apt_late")
        service.process_withdrawal_request(w1.request_id, "completed")
        assert_balance_invariants(service)

        w2 = service.create_withdrawal_request(DOCTOR_ID, Decimal("85"), "bank_transfer", BANK_DETAILS)
        service.process_withdrawal_request(w2.request_id, "rejected")
        service.record_adjustment(DOCTOR_ID, Decimal("-85"), "Clawback")
        assert_balance_invariants(service)

        summary = service.get_summary(DOCTOR_ID)
        assert summary.available_balance == Decimal("0")
        assert summary.total_withdrawn == Decimal("50")


class ReadFailsAfterWrite(InMemoryStorage):
    """The first withdrawal read after each withdrawal write fails."""

    def __init__(self):
        super().__init__()
        self.tripped = False

    def add_withdrawal(self, withdrawal):
        super().add_withdrawal(withdrawal)
        self.tripped = True

    def save_withdrawal(self, withdrawal):
        super().save_withdrawal(withdrawal)
        self.tripped = True

    def list_withdrawals(self, doctor_id):
        if self.tripped:
            self.tripped = False
            raise StoreUnavailableError("withdrawal store unreachable")
        return super().list_withdrawals(doctor_id)


class TestRefreshAfterWithdrawalWrite:
    """Tests for committed withdrawal writes whose summary refresh fails."""

    def test_request_not_duplicated_when_refresh_fails(self, clock):
        """Test a stored request is returned, so the caller has nothing to retry."""
        service = make_service(storage=ReadFailsAfterWrite(), clock=clock)
        fund(service)

        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")

        assert withdrawal.status == WithdrawalStatus.PENDING
        assert service.list_withdrawal_requests(DOCTOR_ID).total_count == 1
        assert service.get_summary(DOCTOR_ID).reserved_balance == Decimal("40")

    def test_decision_applied_when_refresh_fails(self, clock):
        """Test an approval that was saved is reported as applied."""
        service = make_service(storage=ReadFailsAfterWrite(), clock=clock)
        fund(service)
        withdrawal = service.create_withdrawal_request(DOCTOR_ID, Decimal("40"), "paypal")

        approved = service.process_withdrawal_request(withdrawal.request_id, "processing")
        completed = service.process_withdrawal_request(withdrawal.request_id, "completed")

        assert approved.status == WithdrawalStatus.PROCESSING
        assert completed.status == WithdrawalStatus.COMPLETED
        assert service.get_summary(DOCTOR_ID).available_balance == Decimal("60")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

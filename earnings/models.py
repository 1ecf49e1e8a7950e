from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


ZERO = Decimal("0")


class EarningType(str, Enum):
    CONSULTATION = "CONSULTATION"
    BONUS = "BONUS"
    ADJUSTMENT = "ADJUSTMENT"
    REFUND_DEBIT = "REFUND_DEBIT"


class EarningStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    VOIDED = "voided"


class WithdrawalMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    UPI = "upi"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


# Allowed admin moves; anything not listed here is rejected.
WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.PROCESSING, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.REJECTED: frozenset(),
}

OUTSTANDING_WITHDRAWAL_STATUSES = frozenset({WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING})


class EarningTransaction(BaseModel):
    id: UUID
    doctor_id: str
    type: EarningType
    amount: Decimal
    description: str
    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    consultation_date: Optional[datetime] = None
    status: EarningStatus = EarningStatus.COMPLETED
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    def can_settle(self) -> bool:
        return self.status == EarningStatus.PENDING

    def can_void(self) -> bool:
        return self.status != EarningStatus.VOIDED


class WithdrawalRequest(BaseModel):
    id: UUID
    request_id: str
    doctor_id: str
    amount: Decimal
    method: WithdrawalMethod
    payment_details: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    request_date: datetime
    processed_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    rejected_date: Optional[datetime] = None
    admin_notes: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, target: WithdrawalStatus) -> bool:
        return target in WITHDRAWAL_TRANSITIONS[self.status]

    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_WITHDRAWAL_STATUSES


class MonthlyEarnings(BaseModel):
    month: str
    earnings: Decimal = ZERO
    consultations: int = 0
    average_rating: Decimal = ZERO


class DoctorEarningsSummary(BaseModel):
    doctor_id: str
    total_earnings: Decimal = ZERO
    available_balance: Decimal = ZERO
    pending_earnings: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    reserved_balance: Decimal = ZERO
    withdrawable_balance: Decimal = ZERO
    total_consultations: int = 0
    average_per_consultation: Decimal = ZERO
    this_month_earnings: Decimal = ZERO
    last_month_earnings: Decimal = ZERO
    monthly_data: list[MonthlyEarnings] = Field(default_factory=list)
    last_calculated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Request/response bodies for the HTTP surface

class RecordConsultationRequest(BaseModel):
    appointment_id: str
    patient_id: str
    patient_name: str
    amount: Decimal
    consultation_date: datetime
    consultation_type: str = "video"
    hold: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "appointment_id": "apt_001",
            "patient_id": "pat_042",
            "patient_name": "Sarah Johnson",
            "amount": 50.00,
            "consultation_date": "2024-05-14T10:30:00Z",
            "consultation_type": "video",
        }
    })


class RecordBonusRequest(BaseModel):
    amount: Decimal
    reason: str


class RecordAdjustmentRequest(BaseModel):
    amount: Decimal
    reason: str
    performed_by: Optional[str] = None


class RecordRefundDebitRequest(BaseModel):
    amount: Decimal
    reason: str
    appointment_id: Optional[str] = None


class VoidTransactionRequest(BaseModel):
    reason: str = Field(..., description="Reason for the correction")
    performed_by: Optional[str] = None


class CreateWithdrawalRequest(BaseModel):
    amount: Decimal
    method: str
    payment_details: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 40.00,
            "method": "bank_transfer",
            "payment_details": {
                "account_holder_name": "John Smith",
                "account_number": "1234567890",
                "routing_number": "123456789",
                "bank_name": "Example Bank",
            },
        }
    })


class WithdrawalDecisionRequest(BaseModel):
    decision: str = Field(..., description="approve, reject, complete or a raw status")
    admin_notes: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


class TransactionPage(BaseModel):
    doctor_id: str
    items: list[EarningTransaction]
    total_count: int
    limit: int
    offset: int


class WithdrawalPage(BaseModel):
    doctor_id: Optional[str] = None
    items: list[WithdrawalRequest]
    total_count: int
    limit: int
    offset: int


class EarningResponse(BaseModel):
    transaction: EarningTransaction
    summary: Optional[DoctorEarningsSummary] = None
    message: str


class WithdrawalResponse(BaseModel):
    withdrawal: WithdrawalRequest
    summary: Optional[DoctorEarningsSummary] = None
    message: str

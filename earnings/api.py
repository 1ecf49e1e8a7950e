from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .exceptions import (
    EarningsServiceError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from .logging_config import configure_logging, get_logger
from .models import (
    CreateWithdrawalRequest,
    DoctorEarningsSummary,
    EarningResponse,
    EarningTransaction,
    RecordAdjustmentRequest,
    RecordBonusRequest,
    RecordConsultationRequest,
    RecordRefundDebitRequest,
    TransactionPage,
    VoidTransactionRequest,
    WithdrawalDecisionRequest,
    WithdrawalPage,
    WithdrawalRequest,
    WithdrawalResponse,
)
from .notifications import NotificationBridge, WebhookNotifier
from .service import EarningsService
from .storage import InMemoryStorage, LedgerStorage

logger = get_logger("api")


def build_service(settings: Settings) -> EarningsService:
    storage: LedgerStorage
    if settings.database_url:
        from .sql_storage import SqlAlchemyStorage

        storage = SqlAlchemyStorage.from_url(settings.database_url)
        storage.create_all()
    else:
        storage = InMemoryStorage()

    notifier = None
    if settings.notification_webhook_url:
        notifier = WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    bridge = NotificationBridge(
        notifier,
        max_workers=settings.notification_workers,
        max_pending=settings.notification_max_pending,
    )
    return EarningsService(storage=storage, notifications=bridge, settings=settings)


settings = get_settings()
configure_logging(level=settings.log_level.upper(), json_output=settings.log_json)

app = FastAPI(
    title="Doctor Earnings API",
    description="Consultation earnings ledger with derived balances and an admin-mediated withdrawal workflow",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

earnings_service = build_service(settings)


def get_service() -> EarningsService:
    return earnings_service


def _http_error(exc: EarningsServiceError) -> HTTPException:
    detail = {"code": exc.code, "message": exc.message}
    if isinstance(exc, (ValidationError, InsufficientBalanceError)):
        detail["reason"] = exc.reason
    if isinstance(exc, InsufficientBalanceError):
        detail["requested"] = str(exc.requested)
        detail["available"] = str(exc.available)

    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InsufficientBalanceError, InvalidStateTransitionError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, StoreUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=detail)


def _summary_after_write(service: EarningsService, doctor_id: str) -> Optional[DoctorEarningsSummary]:
    # the write is committed; a failing summary read must not turn it into an error response
    try:
        return service.get_summary(doctor_id)
    except EarningsServiceError:
        logger.warning("summary unavailable after write", extra={"doctor_id": doctor_id}, exc_info=True)
        return None


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "doctor-earnings"}


# ---- earnings ---------------------------------------------------------------

@app.post(
    "/doctors/{doctor_id}/consultations",
    response_model=EarningResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Earnings"],
)
def record_consultation(
    doctor_id: str,
    request: RecordConsultationRequest,
    service: EarningsService = Depends(get_service),
) -> EarningResponse:
    try:
        transaction = service.record_consultation_earning(
            doctor_id,
            request.appointment_id,
            request.patient_id,
            request.patient_name,
            request.amount,
            request.consultation_date,
            request.consultation_type,
            hold=request.hold,
        )
        return EarningResponse(
            transaction=transaction,
            summary=_summary_after_write(service, doctor_id),
            message="Consultation earning recorded",
        )
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post(
    "/doctors/{doctor_id}/bonuses",
    response_model=EarningResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Earnings"],
)
def record_bonus(
    doctor_id: str,
    request: RecordBonusRequest,
    service: EarningsService = Depends(get_service),
) -> EarningResponse:
    try:
        transaction = service.record_bonus_earning(doctor_id, request.amount, request.reason)
        return EarningResponse(
            transaction=transaction,
            summary=_summary_after_write(service, doctor_id),
            message="Bonus recorded",
        )
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post(
    "/doctors/{doctor_id}/adjustments",
    response_model=EarningResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Earnings"],
)
def record_adjustment(
    doctor_id: str,
    request: RecordAdjustmentRequest,
    service: EarningsService = Depends(get_service),
) -> EarningResponse:
    try:
        transaction = service.record_adjustment(
            doctor_id, request.amount, request.reason, request.performed_by
        )
        return EarningResponse(
            transaction=transaction,
            summary=_summary_after_write(service, doctor_id),
            message="Adjustment recorded",
        )
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post(
    "/doctors/{doctor_id}/refund-debits",
    response_model=EarningResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Earnings"],
)
def record_refund_debit(
    doctor_id: str,
    request: RecordRefundDebitRequest,
    service: EarningsService = Depends(get_service),
) -> EarningResponse:
    try:
        transaction = service.record_refund_debit(
            doctor_id, request.amount, request.reason, request.appointment_id
        )
        return EarningResponse(
            transaction=transaction,
            summary=_summary_after_write(service, doctor_id),
            message="Refund debit recorded",
        )
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post("/transactions/{transaction_id}/void", response_model=EarningTransaction, tags=["Earnings"])
def void_transaction(
    transaction_id: UUID,
    request: VoidTransactionRequest,
    service: EarningsService = Depends(get_service),
) -> EarningTransaction:
    try:
        return service.void_transaction(transaction_id, request.reason, request.performed_by)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post("/transactions/{transaction_id}/settle", response_model=EarningTransaction, tags=["Earnings"])
def settle_transaction(
    transaction_id: UUID,
    service: EarningsService = Depends(get_service),
) -> EarningTransaction:
    try:
        return service.settle_transaction(transaction_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/doctors/{doctor_id}/summary", response_model=DoctorEarningsSummary, tags=["Earnings"])
def get_summary(
    doctor_id: str,
    service: EarningsService = Depends(get_service),
) -> DoctorEarningsSummary:
    try:
        return service.get_summary(doctor_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post(
    "/doctors/{doctor_id}/summary/recalculate",
    response_model=DoctorEarningsSummary,
    tags=["Earnings"],
)
def recalculate_summary(
    doctor_id: str,
    service: EarningsService = Depends(get_service),
) -> DoctorEarningsSummary:
    try:
        return service.recalculate_summary(doctor_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/doctors/{doctor_id}/transactions", response_model=TransactionPage, tags=["Earnings"])
def list_transactions(
    doctor_id: str,
    limit: int = 50,
    offset: int = 0,
    service: EarningsService = Depends(get_service),
) -> TransactionPage:
    try:
        return service.list_transactions(doctor_id, limit, offset)
    except EarningsServiceError as e:
        raise _http_error(e)


# ---- withdrawals ------------------------------------------------------------

@app.post(
    "/doctors/{doctor_id}/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Withdrawals"],
)
def create_withdrawal(
    doctor_id: str,
    request: CreateWithdrawalRequest,
    service: EarningsService = Depends(get_service),
) -> WithdrawalResponse:
    try:
        withdrawal = service.create_withdrawal_request(
            doctor_id, request.amount, request.method, request.payment_details, request.notes
        )
        return WithdrawalResponse(
            withdrawal=withdrawal,
            summary=_summary_after_write(service, doctor_id),
            message="Withdrawal request submitted",
        )
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/doctors/{doctor_id}/withdrawals", response_model=WithdrawalPage, tags=["Withdrawals"])
def list_withdrawals(
    doctor_id: str,
    limit: int = 20,
    offset: int = 0,
    service: EarningsService = Depends(get_service),
) -> WithdrawalPage:
    try:
        return service.list_withdrawal_requests(doctor_id, limit, offset)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/withdrawals/{request_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
def get_withdrawal(
    request_id: str,
    service: EarningsService = Depends(get_service),
) -> WithdrawalRequest:
    try:
        return service.get_withdrawal_request(request_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/admin/withdrawals", response_model=WithdrawalPage, tags=["Admin"])
def list_withdrawals_for_review(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = 50,
    offset: int = 0,
    service: EarningsService = Depends(get_service),
) -> WithdrawalPage:
    try:
        return service.list_withdrawals_for_review(status_filter, limit, offset)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post(
    "/admin/withdrawals/{request_id}/decision",
    response_model=WithdrawalResponse,
    tags=["Admin"],
)
def decide_withdrawal(
    request_id: str,
    request: WithdrawalDecisionRequest,
    service: EarningsService = Depends(get_service),
) -> WithdrawalResponse:
    try:
        withdrawal = service.on_withdrawal_decision(
            request_id,
            request.decision,
            notes=request.admin_notes,
            transaction_id=request.transaction_id,
            failure_reason=request.failure_reason,
        )
        return WithdrawalResponse(
            withdrawal=withdrawal,
            summary=_summary_after_write(service, withdrawal.doctor_id),
            message=f"Withdrawal moved to {withdrawal.status.value}",
        )
    except EarningsServiceError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

"""
SQLAlchemy-backed ledger storage.

Tables:
    earning_transactions      append-oriented, status/metadata are the only mutable columns
    withdrawal_requests       append-oriented, one row per request, lifecycle columns updated in place
    doctor_earnings_summary   derived, one row per doctor, always written as a full replace
    doctor_ledger_locks       one row per doctor, locked FOR UPDATE to serialize balance checks across processes

Any DBAPI failure is surfaced as StoreUnavailableError so callers can retry.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, Select, String, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.types import TypeDecorator

from .exceptions import StoreUnavailableError
from .logging_config import get_logger
from .models import (
    DoctorEarningsSummary,
    EarningStatus,
    EarningTransaction,
    EarningType,
    WithdrawalMethod,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .storage import LedgerStorage

logger = get_logger("sql_storage")


class UUIDString(TypeDecorator):
    """UUID stored as String(36) for cross-database portability."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return uuid.UUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """Always hands back aware UTC datetimes, even on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    type_annotation_map = {
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        uuid.UUID: UUIDString(),
    }


class EarningTransactionRow(Base):
    __tablename__ = "earning_transactions"
    __table_args__ = (
        Index("ix_earning_transactions_doctor_created", "doctor_id", "created_at"),
        Index("ix_earning_transactions_appointment", "appointment_id"),
    )

    # insertion sequence breaks created_at ties when paging
    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[uuid.UUID] = mapped_column(unique=True)
    doctor_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(20))
    amount: Mapped[Decimal]
    description: Mapped[str] = mapped_column(String(500))
    appointment_id: Mapped[Optional[str]] = mapped_column(String(64))
    patient_id: Mapped[Optional[str]] = mapped_column(String(64))
    patient_name: Mapped[Optional[str]] = mapped_column(String(200))
    consultation_date: Mapped[Optional[datetime]]
    status: Mapped[str] = mapped_column(String(20), index=True)
    created_at: Mapped[datetime]
    # attribute name cannot be "metadata" in SQLAlchemy Declarative
    txn_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)


class WithdrawalRequestRow(Base):
    __tablename__ = "withdrawal_requests"
    __table_args__ = (
        Index("ix_withdrawal_requests_doctor_created", "doctor_id", "created_at"),
        Index("ix_withdrawal_requests_status_request_date", "status", "request_date"),
    )

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[uuid.UUID] = mapped_column(unique=True)
    request_id: Mapped[str] = mapped_column(String(64), unique=True)
    doctor_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[Decimal]
    method: Mapped[str] = mapped_column(String(20))
    payment_details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    notes: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(20))
    request_date: Mapped[datetime]
    processed_date: Mapped[Optional[datetime]]
    completed_date: Mapped[Optional[datetime]]
    rejected_date: Mapped[Optional[datetime]]
    admin_notes: Mapped[Optional[str]] = mapped_column(String(1000))
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128))
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime]


class DoctorEarningsSummaryRow(Base):
    __tablename__ = "doctor_earnings_summary"

    doctor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    last_calculated_at: Mapped[datetime]


class DoctorLockRow(Base):
    """One row per doctor, held FOR UPDATE while a balance check and its write run."""

    __tablename__ = "doctor_ledger_locks"

    doctor_id: Mapped[str] = mapped_column(String(64), primary_key=True)


def lock_statement(doctor_id: str) -> Select:
    return (
        select(DoctorLockRow.doctor_id)
        .where(DoctorLockRow.doctor_id == doctor_id)
        .with_for_update()
    )


def _to_transaction(row: EarningTransactionRow) -> EarningTransaction:
    return EarningTransaction(
        id=row.id,
        doctor_id=row.doctor_id,
        type=EarningType(row.type),
        amount=row.amount,
        description=row.description,
        appointment_id=row.appointment_id,
        patient_id=row.patient_id,
        patient_name=row.patient_name,
        consultation_date=row.consultation_date,
        status=EarningStatus(row.status),
        created_at=row.created_at,
        metadata=dict(row.txn_metadata or {}),
    )


def _to_withdrawal(row: WithdrawalRequestRow) -> WithdrawalRequest:
    return WithdrawalRequest(
        id=row.id,
        request_id=row.request_id,
        doctor_id=row.doctor_id,
        amount=row.amount,
        method=WithdrawalMethod(row.method),
        payment_details=dict(row.payment_details or {}),
        notes=row.notes,
        status=WithdrawalStatus(row.status),
        request_date=row.request_date,
        processed_date=row.processed_date,
        completed_date=row.completed_date,
        rejected_date=row.rejected_date,
        admin_notes=row.admin_notes,
        transaction_id=row.transaction_id,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
    )


def _withdrawal_columns(withdrawal: WithdrawalRequest) -> dict[str, Any]:
    return {
        "id": withdrawal.id,
        "request_id": withdrawal.request_id,
        "doctor_id": withdrawal.doctor_id,
        "amount": withdrawal.amount,
        "method": withdrawal.method.value,
        "payment_details": withdrawal.model_dump(mode="json")["payment_details"],
        "notes": withdrawal.notes,
        "status": withdrawal.status.value,
        "request_date": withdrawal.request_date,
        "processed_date": withdrawal.processed_date,
        "completed_date": withdrawal.completed_date,
        "rejected_date": withdrawal.rejected_date,
        "admin_notes": withdrawal.admin_notes,
        "transaction_id": withdrawal.transaction_id,
        "failure_reason": withdrawal.failure_reason,
        "created_at": withdrawal.created_at,
    }


class SqlAlchemyStorage(LedgerStorage):
    def __init__(self, engine: Engine):
        super().__init__()
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
        self._held = threading.local()

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs: Any) -> "SqlAlchemyStorage":
        engine = create_engine(database_url, pool_pre_ping=True, **engine_kwargs)
        return cls(engine)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except DBAPIError as exc:
            logger.error("ledger store unavailable", exc_info=True)
            raise StoreUnavailableError(f"Ledger store unavailable: {exc.orig}") from exc

    # cross-process serialization

    @contextmanager
    def doctor_lock(self, doctor_id: str) -> Iterator[None]:
        """
        Per-doctor lock that also holds across processes sharing the database.

        The in-process lock is taken first; the outermost holder in a thread
        then locks the doctor's row in doctor_ledger_locks until the block
        exits. Nested calls in the same thread reuse that row lock.
        """
        with super().doctor_lock(doctor_id):
            depth = self._lock_depths()
            outermost = not depth.get(doctor_id)
            with self._row_lock(doctor_id) if outermost else nullcontext():
                depth[doctor_id] = depth.get(doctor_id, 0) + 1
                try:
                    yield
                finally:
                    depth[doctor_id] -= 1

    def _lock_depths(self) -> dict[str, int]:
        if not hasattr(self._held, "depths"):
            self._held.depths = {}
        return self._held.depths

    @contextmanager
    def _row_lock(self, doctor_id: str) -> Iterator[None]:
        self._ensure_lock_row(doctor_id)
        with self._session() as session:
            session.execute(lock_statement(doctor_id))
            yield

    def _ensure_lock_row(self, doctor_id: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                if session.get(DoctorLockRow, doctor_id) is None:
                    session.add(DoctorLockRow(doctor_id=doctor_id))
        except IntegrityError:
            # another process inserted the row first
            logger.debug("lock row already present", extra={"doctor_id": doctor_id})
        except DBAPIError as exc:
            logger.error("ledger store unavailable", exc_info=True)
            raise StoreUnavailableError(f"Ledger store unavailable: {exc.orig}") from exc

    # earning transactions

    def add_transaction(self, transaction: EarningTransaction) -> None:
        with self._session() as session:
            session.add(EarningTransactionRow(
                id=transaction.id,
                doctor_id=transaction.doctor_id,
                type=transaction.type.value,
                amount=transaction.amount,
                description=transaction.description,
                appointment_id=transaction.appointment_id,
                patient_id=transaction.patient_id,
                patient_name=transaction.patient_name,
                consultation_date=transaction.consultation_date,
                status=transaction.status.value,
                created_at=transaction.created_at,
                txn_metadata=transaction.model_dump(mode="json")["metadata"],
            ))

    def get_transaction(self, transaction_id: uuid.UUID) -> Optional[EarningTransaction]:
        with self._session() as session:
            row = session.scalar(
                select(EarningTransactionRow).where(EarningTransactionRow.id == transaction_id)
            )
            return _to_transaction(row) if row else None

    def find_consultation_transaction(
        self, doctor_id: str, appointment_id: str
    ) -> Optional[EarningTransaction]:
        with self._session() as session:
            row = session.scalar(
                select(EarningTransactionRow)
                .where(EarningTransactionRow.doctor_id == doctor_id)
                .where(EarningTransactionRow.appointment_id == appointment_id)
                .where(EarningTransactionRow.type == EarningType.CONSULTATION.value)
                .order_by(EarningTransactionRow.pk)
                .limit(1)
            )
            return _to_transaction(row) if row else None

    def set_transaction_status(
        self,
        transaction_id: uuid.UUID,
        status: EarningStatus,
        metadata_updates: Optional[dict[str, Any]] = None,
    ) -> EarningTransaction:
        with self._session() as session:
            row = session.scalar(
                select(EarningTransactionRow).where(EarningTransactionRow.id == transaction_id)
            )
            if row is None:
                raise KeyError(transaction_id)
            row.status = status.value
            # reassign so the JSON column is flagged dirty
            row.txn_metadata = {**(row.txn_metadata or {}), **(metadata_updates or {})}
            session.flush()
            return _to_transaction(row)

    def list_transactions(self, doctor_id: str) -> list[EarningTransaction]:
        with self._session() as session:
            rows = session.scalars(
                select(EarningTransactionRow)
                .where(EarningTransactionRow.doctor_id == doctor_id)
                .order_by(EarningTransactionRow.pk)
            ).all()
            return [_to_transaction(r) for r in rows]

    def page_transactions(
        self, doctor_id: str, limit: int, offset: int
    ) -> tuple[list[EarningTransaction], int]:
        with self._session() as session:
            total = session.scalar(
                select(func.count())
                .select_from(EarningTransactionRow)
                .where(EarningTransactionRow.doctor_id == doctor_id)
            )
            rows = session.scalars(
                select(EarningTransactionRow)
                .where(EarningTransactionRow.doctor_id == doctor_id)
                .order_by(EarningTransactionRow.created_at.desc(), EarningTransactionRow.pk.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [_to_transaction(r) for r in rows], total or 0

    # withdrawal requests

    def add_withdrawal(self, withdrawal: WithdrawalRequest) -> None:
        with self._session() as session:
            session.add(WithdrawalRequestRow(**_withdrawal_columns(withdrawal)))

    def get_withdrawal(self, request_id: str) -> Optional[WithdrawalRequest]:
        with self._session() as session:
            row = session.scalar(
                select(WithdrawalRequestRow).where(WithdrawalRequestRow.request_id == request_id)
            )
            return _to_withdrawal(row) if row else None

    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> None:
        with self._session() as session:
            row = session.scalar(
                select(WithdrawalRequestRow)
                .where(WithdrawalRequestRow.request_id == withdrawal.request_id)
            )
            if row is None:
                raise KeyError(withdrawal.request_id)
            for key, value in _withdrawal_columns(withdrawal).items():
                setattr(row, key, value)

    def list_withdrawals(self, doctor_id: str) -> list[WithdrawalRequest]:
        with self._session() as session:
            rows = session.scalars(
                select(WithdrawalRequestRow)
                .where(WithdrawalRequestRow.doctor_id == doctor_id)
                .order_by(WithdrawalRequestRow.pk)
            ).all()
            return [_to_withdrawal(r) for r in rows]

    def page_withdrawals(
        self,
        doctor_id: Optional[str],
        status: Optional[WithdrawalStatus],
        limit: int,
        offset: int,
    ) -> tuple[list[WithdrawalRequest], int]:
        conditions = []
        if doctor_id is not None:
            conditions.append(WithdrawalRequestRow.doctor_id == doctor_id)
        if status is not None:
            conditions.append(WithdrawalRequestRow.status == status.value)

        with self._session() as session:
            total = session.scalar(
                select(func.count()).select_from(WithdrawalRequestRow).where(*conditions)
            )
            rows = session.scalars(
                select(WithdrawalRequestRow)
                .where(*conditions)
                .order_by(WithdrawalRequestRow.created_at.desc(), WithdrawalRequestRow.pk.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [_to_withdrawal(r) for r in rows], total or 0

    # derived summary

    def get_summary(self, doctor_id: str) -> Optional[DoctorEarningsSummary]:
        with self._session() as session:
            row = session.get(DoctorEarningsSummaryRow, doctor_id)
            return DoctorEarningsSummary.model_validate(row.payload) if row else None

    def save_summary(self, summary: DoctorEarningsSummary) -> None:
        with self._session() as session:
            session.merge(DoctorEarningsSummaryRow(
                doctor_id=summary.doctor_id,
                payload=summary.model_dump(mode="json"),
                last_calculated_at=summary.last_calculated_at,
            ))

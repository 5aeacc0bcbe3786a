"""Loan, repayment schedule and repayment models."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lendledger.database import Base


class InterestMethod(str, enum.Enum):
    REDUCING_BALANCE = "reducing_balance"
    FLAT_RATE = "flat_rate"


class LoanStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    OVERDUE = "overdue"
    CLOSED = "closed"


class ScheduleStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    PAID = "paid"


class Loan(Base):
    __tablename__ = "loans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    principal_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    interest_method: Mapped[InterestMethod] = mapped_column(
        Enum(InterestMethod), nullable=False
    )
    tenure_months: Mapped[int] = mapped_column(Integer, nullable=False)

    processing_fee: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    insurance_fee: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    total_fees: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    total_interest: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_repayment: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    monthly_instalment: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus), default=LoanStatus.DRAFT, nullable=False
    )
    purpose: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disbursed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    disbursed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    disbursement_entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    schedule = relationship(
        "LoanSchedule",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanSchedule.installment_number",
    )
    repayments = relationship("LoanRepayment", back_populates="loan")


class LoanSchedule(Base):
    """One installment of a loan's repayment schedule.

    Paid amounts only grow and ``status`` only moves forward
    (PENDING → PARTIAL → OVERDUE → PAID).
    """

    __tablename__ = "loan_schedules"
    __table_args__ = (
        UniqueConstraint("loan_id", "installment_number", name="uq_loan_installment"),
        Index("ix_loan_schedules_due", "due_date", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    principal_due: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    interest_due: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_due: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    outstanding_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    principal_paid: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    interest_paid: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    status: Mapped[ScheduleStatus] = mapped_column(
        Enum(ScheduleStatus), default=ScheduleStatus.PENDING, nullable=False
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    loan = relationship("Loan", back_populates="schedule")


class LoanRepayment(Base):
    __tablename__ = "loan_repayments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    receipt_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    principal_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    interest_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), default="cash", nullable=False)
    journal_entry_id: Mapped[int] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=False
    )
    received_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    loan = relationship("Loan", back_populates="repayments")

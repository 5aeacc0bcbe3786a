"""Savings account and fixed deposit models."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lendledger.database import Base


class SavingsAccountStatus(str, enum.Enum):
    ACTIVE = "active"
    DORMANT = "dormant"
    CLOSED = "closed"


class SavingsTransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST = "interest"


class FixedDepositStatus(str, enum.Enum):
    ACTIVE = "active"
    MATURED = "matured"
    ROLLED_OVER = "rolled_over"
    PREMATURE_CLOSED = "premature_closed"


class MaturityInstruction(str, enum.Enum):
    PAY_OUT = "pay_out"
    ROLLOVER_PRINCIPAL_AND_INTEREST = "rollover_principal_and_interest"


class SavingsAccount(Base):
    __tablename__ = "savings_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_savings_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    minimum_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    allow_withdrawal: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Annual percentage, credited monthly on the balance
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(9, 4), default=Decimal("0"), nullable=False
    )
    opened_on: Mapped[date] = mapped_column(Date, nullable=False)
    last_interest_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[SavingsAccountStatus] = mapped_column(
        Enum(SavingsAccountStatus), default=SavingsAccountStatus.ACTIVE, nullable=False
    )
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_transaction_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    transactions = relationship(
        "SavingsTransaction",
        back_populates="account",
        order_by="SavingsTransaction.id",
    )


class SavingsTransaction(Base):
    __tablename__ = "savings_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    transaction_reference: Mapped[str] = mapped_column(
        String(30), unique=True, nullable=False
    )
    savings_account_id: Mapped[int] = mapped_column(
        ForeignKey("savings_accounts.id"), nullable=False, index=True
    )
    transaction_type: Mapped[SavingsTransactionType] = mapped_column(
        Enum(SavingsTransactionType), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), default="cash", nullable=False)
    journal_entry_id: Mapped[int] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=False
    )
    narration: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    account = relationship("SavingsAccount", back_populates="transactions")


class FixedDeposit(Base):
    __tablename__ = "fixed_deposits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    certificate_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    principal_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    tenure_days: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    maturity_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    interest_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    maturity_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    accrued_interest: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    last_accrual_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    maturity_instruction: Mapped[MaturityInstruction] = mapped_column(
        Enum(MaturityInstruction), default=MaturityInstruction.PAY_OUT, nullable=False
    )
    status: Mapped[FixedDepositStatus] = mapped_column(
        Enum(FixedDepositStatus), default=FixedDepositStatus.ACTIVE, nullable=False
    )

    penalty_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    terminated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    termination_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rolled_over_from_id: Mapped[int | None] = mapped_column(
        ForeignKey("fixed_deposits.id"), nullable=True
    )

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class FixedDepositRate(Base):
    """Rate card tier: a deposit matches on tenure and amount."""

    __tablename__ = "fixed_deposit_rates"
    __table_args__ = (
        CheckConstraint("min_tenure_days <= max_tenure_days", name="ck_fd_rate_tenure_range"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    min_tenure_days: Mapped[int] = mapped_column(Integer, nullable=False)
    max_tenure_days: Mapped[int] = mapped_column(Integer, nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

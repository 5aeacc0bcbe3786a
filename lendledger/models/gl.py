"""General Ledger models.

Double-entry bookkeeping for a single base currency:
- Hierarchical Chart of Accounts with header (aggregate-only) accounts
- Journal entries with a draft → approval → posted workflow
- Monthly financial periods with a one-way close
- Reference sequences for entry, receipt and account numbers
"""

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
    Index,
    CheckConstraint,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lendledger.database import Base


# ===================================================================
# Enumerations
# ===================================================================


class AccountType(str, enum.Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"


class BalanceSide(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class JournalStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    POSTED = "posted"


class JournalEntryType(str, enum.Enum):
    STANDARD = "standard"
    REVERSAL = "reversal"
    ADJUSTMENT = "adjustment"


class SourceModule(str, enum.Enum):
    MANUAL = "manual"
    LOAN = "loan"
    SAVINGS = "savings"
    FIXED_DEPOSIT = "fixed_deposit"
    SYSTEM = "system"


class PeriodStatus(str, enum.Enum):
    OPEN = "open"
    SOFT_CLOSE = "soft_close"
    HARD_CLOSE = "hard_close"


# ===================================================================
# Chart of Accounts
# ===================================================================


class Account(Base):
    """Chart of Accounts entry.

    Header accounts aggregate their children for reporting and never appear
    on a journal line.  ``current_balance`` is a cache maintained only by the
    posting engine and is always reproducible from ``opening_balance`` plus
    the posted lines.
    """

    __tablename__ = "gl_accounts"
    __table_args__ = (
        Index("ix_gl_accounts_type", "account_type"),
        Index("ix_gl_accounts_parent", "parent_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    account_type: Mapped[AccountType] = mapped_column(Enum(AccountType), nullable=False)
    normal_balance: Mapped[BalanceSide] = mapped_column(Enum(BalanceSide), nullable=False)

    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_accounts.id"), nullable=True
    )
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_header: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system_account: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    parent = relationship("Account", remote_side="Account.id", backref="children")
    journal_lines = relationship("JournalEntryLine", back_populates="account")

    @property
    def is_postable(self) -> bool:
        return self.is_active and not self.is_header


# ===================================================================
# Journal
# ===================================================================


class JournalEntry(Base):
    """Double-entry journal entry header.

    Once POSTED the entry is immutable except for the reversal marker
    (``is_reversed``, ``reversal_entry_id``, ``reversal_reason``,
    ``reversed_at``), which is set exactly once.
    """

    __tablename__ = "gl_journal_entries"
    __table_args__ = (
        Index("ix_gl_je_entry_date", "entry_date"),
        Index("ix_gl_je_status", "status"),
        Index("ix_gl_je_source", "source_module", "source_type", "source_id"),
        CheckConstraint("total_debit = total_credit", name="ck_gl_je_balanced"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entry_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    external_reference: Mapped[str | None] = mapped_column(
        String(100), unique=True, nullable=True
    )
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    value_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    entry_type: Mapped[JournalEntryType] = mapped_column(
        Enum(JournalEntryType), default=JournalEntryType.STANDARD, nullable=False
    )
    status: Mapped[JournalStatus] = mapped_column(
        Enum(JournalStatus), default=JournalStatus.DRAFT, nullable=False
    )

    total_debit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_credit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    narration: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Traceability back to the originating workflow
    source_module: Mapped[SourceModule] = mapped_column(
        Enum(SourceModule), default=SourceModule.MANUAL, nullable=False
    )
    source_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("loans.id"), nullable=True, index=True
    )
    savings_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("savings_accounts.id"), nullable=True
    )
    fixed_deposit_id: Mapped[int | None] = mapped_column(
        ForeignKey("fixed_deposits.id"), nullable=True
    )

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Reversal linkage
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reversal_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    reverses_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    lines = relationship(
        "JournalEntryLine",
        back_populates="journal_entry",
        cascade="all, delete-orphan",
        order_by="JournalEntryLine.line_number",
    )

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit and self.total_debit > 0


class JournalEntryLine(Base):
    """One debit or credit line of a journal entry."""

    __tablename__ = "gl_journal_entry_lines"
    __table_args__ = (
        Index("ix_gl_jel_account", "account_id"),
        CheckConstraint(
            "debit_amount >= 0 AND credit_amount >= 0 "
            "AND NOT (debit_amount > 0 AND credit_amount > 0)",
            name="ck_gl_jel_one_side",
        ),
        UniqueConstraint("journal_entry_id", "line_number", name="uq_gl_jel_line"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    journal_entry_id: Mapped[int] = mapped_column(
        ForeignKey("gl_journal_entries.id", ondelete="CASCADE"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("gl_accounts.id"), nullable=False)

    debit_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    credit_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Optional cross-reference to the originating customer / loan / account
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    journal_entry = relationship("JournalEntry", back_populates="lines")
    account = relationship("Account", back_populates="journal_lines")


# ===================================================================
# Periods and sequences
# ===================================================================


class FinancialPeriod(Base):
    """Monthly financial period.  A month with no row is OPEN."""

    __tablename__ = "gl_financial_periods"
    __table_args__ = (
        UniqueConstraint("year", "month", name="uq_gl_period_year_month"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PeriodStatus] = mapped_column(
        Enum(PeriodStatus), default=PeriodStatus.OPEN, nullable=False
    )
    closed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closing_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def name(self) -> str:
        return f"{self.year}-{self.month:02d}"


class Sequence(Base):
    """Per-day counter backing human-readable reference numbers."""

    __tablename__ = "sequences"
    __table_args__ = (
        UniqueConstraint("code", "sequence_date", name="uq_sequence_code_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(30), nullable=False)
    sequence_date: Mapped[date] = mapped_column(Date, nullable=False)
    prefix: Mapped[str] = mapped_column(String(10), nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pad_length: Mapped[int] = mapped_column(Integer, default=6, nullable=False)

"""Loan lifecycle: origination, approval, disbursement and repayment.

Lifecycle:
  DRAFT → PENDING_APPROVAL → APPROVED → ACTIVE ⇄ OVERDUE → CLOSED
                           ↘ REJECTED

Disbursement and every repayment post exactly one journal entry through the
posting engine, inside the same atomic unit as the loan and schedule updates.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from lendledger.models.gl import SourceModule
from lendledger.models.loan import (
    InterestMethod,
    Loan,
    LoanRepayment,
    LoanSchedule,
    LoanStatus,
    ScheduleStatus,
)
from lendledger.money import HUNDRED, ZERO, round_money, to_decimal
from lendledger.services.amortization import calculate_schedule
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.context import Actor, LedgerContext
from lendledger.services.gl.errors import (
    ApprovalLimitError,
    InvalidAmountError,
    LedgerError,
    LedgerResult,
    NotFoundError,
    SegregationOfDutiesError,
    StatusTransitionError,
)
from lendledger.services.gl.journal_engine import (
    EntryMetadata,
    JournalLineInput,
    ensure_reference_unused,
    submit,
)
from lendledger.services.repayment_allocator import (
    InstallmentState,
    PaymentAllocation,
    allocate_payment,
    repayment_journal_lines,
)
from lendledger.services.sequence import ReferenceKind, generate_reference

logger = logging.getLogger(__name__)

_REPAYABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


@dataclass(kw_only=True)
class LoanResult(LedgerResult):
    loan_id: int | None = None
    loan_number: str | None = None
    status: LoanStatus | None = None
    journal_entry_id: int | None = None


@dataclass(kw_only=True)
class RepaymentResult(LedgerResult):
    loan_id: int | None = None
    receipt_number: str | None = None
    journal_entry_id: int | None = None
    amount: Decimal = ZERO
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    loan_status: LoanStatus | None = None
    installments_paid: list[int] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def calculate_fee(principal: Decimal, rate_percent) -> Decimal:
    """``principal * rate / 100`` rounded to the cent."""
    return round_money(principal * to_decimal(rate_percent) / HUNDRED)


async def _lock_loan(ctx: LedgerContext, loan_id: int) -> Loan:
    result = await ctx.db.execute(
        select(Loan)
        .where(Loan.id == loan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    loan = result.scalar_one_or_none()
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
    return loan


def _require_status(loan: Loan, *allowed: LoanStatus) -> None:
    if loan.status not in allowed:
        raise StatusTransitionError(
            f"Loan {loan.loan_number} is {loan.status.value}; expected "
            f"{' or '.join(s.value for s in allowed)}",
            loan_number=loan.loan_number,
            status=loan.status.value,
        )


async def _open_installments(ctx: LedgerContext, loan_id: int) -> list[LoanSchedule]:
    result = await ctx.db.execute(
        select(LoanSchedule)
        .where(LoanSchedule.loan_id == loan_id, LoanSchedule.status != ScheduleStatus.PAID)
        .order_by(LoanSchedule.due_date, LoanSchedule.installment_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _state_of(row: LoanSchedule) -> InstallmentState:
    return InstallmentState(
        schedule_id=row.id,
        installment_number=row.installment_number,
        due_date=row.due_date,
        principal_due=round_money(row.principal_due),
        interest_due=round_money(row.interest_due),
        principal_paid=round_money(row.principal_paid),
        interest_paid=round_money(row.interest_paid),
        status=row.status,
    )


# ---------------------------------------------------------------------------
# Origination and approval
# ---------------------------------------------------------------------------

async def create_loan(
    ctx: LedgerContext,
    *,
    customer_id: int,
    principal_amount,
    interest_rate,
    tenure_months: int,
    created_by: int,
    interest_method: InterestMethod = InterestMethod.REDUCING_BALANCE,
    processing_fee_rate=ZERO,
    insurance_fee_rate=ZERO,
    purpose: str | None = None,
    start_date: date | None = None,
) -> LoanResult:
    """Create a DRAFT loan with its full repayment schedule and fees."""
    try:
        principal = round_money(principal_amount)
        try:
            calc = calculate_schedule(
                principal, interest_rate, tenure_months, interest_method, start_date
            )
        except ValueError as exc:
            raise InvalidAmountError(str(exc)) from exc

        processing_fee = calculate_fee(principal, processing_fee_rate)
        insurance_fee = calculate_fee(principal, insurance_fee_rate)
        total_fees = processing_fee + insurance_fee
        if total_fees >= principal:
            raise InvalidAmountError(
                f"Fees {total_fees} would consume the whole principal {principal}",
                total_fees=total_fees,
            )

        async with ctx.transaction() as db:
            loan = Loan(
                loan_number=await generate_reference(db, ReferenceKind.LOAN),
                customer_id=customer_id,
                principal_amount=principal,
                interest_rate=to_decimal(interest_rate),
                interest_method=interest_method,
                tenure_months=tenure_months,
                processing_fee=processing_fee,
                insurance_fee=insurance_fee,
                total_fees=total_fees,
                total_interest=calc.total_interest,
                total_repayment=calc.total_repayment,
                monthly_instalment=calc.monthly_instalment,
                status=LoanStatus.DRAFT,
                purpose=purpose,
                created_by=created_by,
            )
            for line in calc.entries:
                loan.schedule.append(
                    LoanSchedule(
                        installment_number=line.installment_number,
                        due_date=line.due_date,
                        principal_due=line.principal_due,
                        interest_due=line.interest_due,
                        total_due=line.total_due,
                        outstanding_balance=line.outstanding_balance,
                        principal_paid=ZERO,
                        interest_paid=ZERO,
                        status=ScheduleStatus.PENDING,
                    )
                )
            db.add(loan)
            await db.flush()
            outcome = LoanResult(loan_id=loan.id, loan_number=loan.loan_number, status=loan.status)
    except LedgerError as exc:
        logger.warning("Loan creation rejected: %s", exc.message)
        return LoanResult.failed(exc)

    logger.info(
        "Loan %s created for customer %d (principal=%s, tenure=%d)",
        outcome.loan_number, customer_id, principal, tenure_months,
    )
    return outcome


async def submit_loan_for_approval(ctx: LedgerContext, loan_id: int) -> LoanResult:
    """DRAFT → PENDING_APPROVAL."""
    try:
        async with ctx.transaction() as db:
            loan = await _lock_loan(ctx, loan_id)
            _require_status(loan, LoanStatus.DRAFT)
            loan.status = LoanStatus.PENDING_APPROVAL
            await db.flush()
            outcome = LoanResult(loan_id=loan.id, loan_number=loan.loan_number, status=loan.status)
    except LedgerError as exc:
        return LoanResult.failed(exc)

    logger.info("Loan %s submitted for approval", outcome.loan_number)
    return outcome


async def approve_loan(
    ctx: LedgerContext,
    loan_id: int,
    approver: Actor,
    *,
    approve: bool = True,
) -> LoanResult:
    """Approve or reject a loan awaiting approval.

    The creator may not decide on their own loan, and an approval is limited
    to the approver's limit.  Rejections are not limited.
    """
    try:
        async with ctx.transaction() as db:
            loan = await _lock_loan(ctx, loan_id)
            _require_status(loan, LoanStatus.PENDING_APPROVAL)
            if loan.created_by == approver.actor_id:
                raise SegregationOfDutiesError(
                    f"User {approver.actor_id} created loan {loan.loan_number} and cannot approve it",
                    actor_id=approver.actor_id,
                )
            if (
                approve
                and approver.approval_limit is not None
                and loan.principal_amount > approver.approval_limit
            ):
                raise ApprovalLimitError(
                    f"Loan amount {loan.principal_amount} exceeds approval limit "
                    f"{approver.approval_limit}",
                    amount=loan.principal_amount,
                    approval_limit=approver.approval_limit,
                )

            loan.status = LoanStatus.APPROVED if approve else LoanStatus.REJECTED
            loan.approved_by = approver.actor_id
            if approve:
                loan.approved_at = datetime.now(timezone.utc)
            await db.flush()
            outcome = LoanResult(loan_id=loan.id, loan_number=loan.loan_number, status=loan.status)
    except LedgerError as exc:
        logger.warning("Loan %s approval rejected: %s", loan_id, exc.message)
        return LoanResult.failed(exc)

    logger.info(
        "Loan %s %s by user %d", outcome.loan_number, outcome.status.value, approver.actor_id
    )
    return outcome


# ---------------------------------------------------------------------------
# Disbursement
# ---------------------------------------------------------------------------

async def disburse_loan(
    ctx: LedgerContext,
    loan_id: int,
    disbursed_by: int,
    disbursement_date: date | None = None,
) -> LoanResult:
    """Post the disbursement and activate the loan.

    DR loans receivable (principal); CR cash (principal less fees);
    CR fee income (fees).
    """
    on = disbursement_date or date.today()
    try:
        async with ctx.transaction() as db:
            loan = await _lock_loan(ctx, loan_id)
            _require_status(loan, LoanStatus.APPROVED)

            principal = round_money(loan.principal_amount)
            fees = round_money(loan.total_fees)
            ref = {"customer_id": loan.customer_id, "reference_type": "LOAN", "reference_id": loan.id}
            lines = [
                JournalLineInput(
                    account_id=ctx.accounts[AccountRole.LOANS_RECEIVABLE].id,
                    debit_amount=principal,
                    description="Loan principal",
                    **ref,
                ),
                JournalLineInput(
                    account_id=ctx.accounts[AccountRole.CASH_BANK].id,
                    credit_amount=principal - fees,
                    description="Disbursement to customer",
                ),
            ]
            if fees > 0:
                lines.append(
                    JournalLineInput(
                        account_id=ctx.accounts[AccountRole.FEE_INCOME].id,
                        credit_amount=fees,
                        description="Processing and insurance fees",
                    )
                )

            posting = await submit(
                ctx,
                lines,
                on,
                EntryMetadata(
                    description=f"Loan disbursement - {loan.loan_number}",
                    source_module=SourceModule.LOAN,
                    source_type="DISBURSEMENT",
                    source_id=loan.id,
                    loan_id=loan.id,
                    created_by=disbursed_by,
                ),
            )
            posting.raise_for_error()

            loan.status = LoanStatus.ACTIVE
            loan.disbursed_by = disbursed_by
            loan.disbursed_at = datetime.now(timezone.utc)
            loan.disbursement_entry_id = posting.entry_id
            await db.flush()
            outcome = LoanResult(
                loan_id=loan.id,
                loan_number=loan.loan_number,
                status=loan.status,
                journal_entry_id=posting.entry_id,
            )
    except LedgerError as exc:
        logger.warning("Disbursement of loan %s rejected: %s", loan_id, exc.message)
        return LoanResult.failed(exc)

    logger.info(
        "Loan %s disbursed (entry %s, net %s)",
        outcome.loan_number, outcome.journal_entry_id, principal - fees,
    )
    return outcome


# ---------------------------------------------------------------------------
# Repayment
# ---------------------------------------------------------------------------

async def process_repayment(
    ctx: LedgerContext,
    loan_id: int,
    amount,
    *,
    received_by: int,
    payment_date: date | None = None,
    payment_method: str = "cash",
    idempotency_key: str | None = None,
) -> RepaymentResult:
    """Apply a payment FIFO across open installments and post it.

    The journal entry, the schedule updates and the repayment record commit
    together or not at all.  A retried *idempotency_key* fails with
    ``DUPLICATE_REFERENCE`` ahead of any status or amount check, and changes
    nothing.
    """
    on = payment_date or date.today()
    try:
        async with ctx.transaction() as db:
            loan = await _lock_loan(ctx, loan_id)
            if idempotency_key:
                await ensure_reference_unused(db, idempotency_key)
            _require_status(loan, *_REPAYABLE_STATUSES)

            rows = await _open_installments(ctx, loan.id)
            allocation: PaymentAllocation = allocate_payment(amount, [_state_of(r) for r in rows])

            lines = repayment_journal_lines(
                allocation,
                cash_account_id=ctx.accounts[AccountRole.CASH_BANK].id,
                loans_receivable_account_id=ctx.accounts[AccountRole.LOANS_RECEIVABLE].id,
                interest_income_account_id=ctx.accounts[AccountRole.INTEREST_INCOME].id,
                customer_id=loan.customer_id,
                loan_id=loan.id,
            )
            posting = await submit(
                ctx,
                lines,
                on,
                EntryMetadata(
                    description=f"Loan repayment - {loan.loan_number}",
                    source_module=SourceModule.LOAN,
                    source_type="REPAYMENT",
                    source_id=loan.id,
                    loan_id=loan.id,
                    external_reference=idempotency_key,
                    created_by=received_by,
                ),
            )
            posting.raise_for_error()

            now = datetime.now(timezone.utc)
            by_id = {r.id: r for r in rows}
            for alloc in allocation.allocations:
                row = by_id[alloc.schedule_id]
                row.interest_paid = alloc.interest_paid
                row.principal_paid = alloc.principal_paid
                row.status = alloc.status
                if alloc.is_paid:
                    row.paid_at = now

            repayment = LoanRepayment(
                receipt_number=await generate_reference(db, ReferenceKind.RECEIPT, on),
                loan_id=loan.id,
                amount=allocation.applied_total,
                principal_paid=allocation.principal_total,
                interest_paid=allocation.interest_total,
                payment_date=on,
                payment_method=payment_method,
                journal_entry_id=posting.entry_id,
                received_by=received_by,
            )
            db.add(repayment)

            still_open = [r for r in rows if r.status != ScheduleStatus.PAID]
            if not still_open:
                loan.status = LoanStatus.CLOSED
                loan.closed_at = now
            elif loan.status == LoanStatus.OVERDUE and not any(
                r.status == ScheduleStatus.OVERDUE for r in still_open
            ):
                loan.status = LoanStatus.ACTIVE
            await db.flush()

            outcome = RepaymentResult(
                loan_id=loan.id,
                receipt_number=repayment.receipt_number,
                journal_entry_id=posting.entry_id,
                amount=allocation.applied_total,
                principal_paid=allocation.principal_total,
                interest_paid=allocation.interest_total,
                loan_status=loan.status,
                installments_paid=[a.installment_number for a in allocation.allocations if a.is_paid],
            )
    except LedgerError as exc:
        logger.warning("Repayment on loan %s rejected (%s): %s", loan_id, exc.kind.value, exc.message)
        return RepaymentResult.failed(exc, loan_id=loan_id)

    logger.info(
        "Repayment %s on loan %d: principal=%s interest=%s (loan %s)",
        outcome.receipt_number, loan_id, outcome.principal_paid,
        outcome.interest_paid, outcome.loan_status.value,
    )
    return outcome


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_loan(ctx: LedgerContext, loan_id: int) -> Loan | None:
    result = await ctx.db.execute(
        select(Loan)
        .where(Loan.id == loan_id)
        .options(selectinload(Loan.schedule), selectinload(Loan.repayments))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_outstanding_schedule(ctx: LedgerContext, loan_id: int) -> list[LoanSchedule]:
    """Installments not yet PAID, oldest due first."""
    result = await ctx.db.execute(
        select(LoanSchedule)
        .where(LoanSchedule.loan_id == loan_id, LoanSchedule.status != ScheduleStatus.PAID)
        .order_by(LoanSchedule.due_date, LoanSchedule.installment_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_outstanding_balance(ctx: LedgerContext, loan_id: int) -> Decimal:
    """Principal plus interest still owed across open installments."""
    rows = await get_outstanding_schedule(ctx, loan_id)
    return sum((_state_of(r).outstanding for r in rows), ZERO)


async def mark_loan_overdue(ctx: LedgerContext, loan_id: int) -> bool:
    """ACTIVE → OVERDUE.  Returns False when the loan was not ACTIVE."""
    result = await ctx.db.execute(
        update(Loan)
        .where(Loan.id == loan_id, Loan.status == LoanStatus.ACTIVE)
        .values(status=LoanStatus.OVERDUE)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

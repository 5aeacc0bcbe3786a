"""End-of-day batch jobs.

Every loan, deposit or savings account is processed in its own atomic unit and committed on
its own; a failing item is logged and counted, and never rolls back items
already done.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select, update

from lendledger.models.loan import Loan, LoanSchedule, LoanStatus, ScheduleStatus
from lendledger.money import ZERO
from lendledger.services.fixed_deposit_service import (
    accrue_interest_for_deposit,
    list_deposits_due_for_accrual,
    list_matured_deposits,
    mature_deposit,
)
from lendledger.services.gl.context import LedgerContext
from lendledger.services.gl.errors import LedgerError
from lendledger.services.loan_service import mark_loan_overdue
from lendledger.services.savings_service import credit_interest, list_accounts_due_for_interest

logger = logging.getLogger(__name__)


@dataclass
class BatchRunResult:
    job: str
    as_of: date
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    total_amount: Decimal = ZERO
    errors: list[str] = field(default_factory=list)

    def record_failure(self, item_id: int, message: str) -> None:
        self.failed += 1
        self.errors.append(f"{item_id}: {message}")


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------

async def mark_overdue_schedules(ctx: LedgerContext, as_of: date | None = None) -> BatchRunResult:
    """Flag unpaid installments due before *as_of* as OVERDUE, and their loans."""
    today = as_of or date.today()
    run = BatchRunResult(job="mark_overdue_schedules", as_of=today)

    result = await ctx.db.execute(
        select(LoanSchedule.loan_id, LoanSchedule.id)
        .join(Loan, Loan.id == LoanSchedule.loan_id)
        .where(
            Loan.status.in_([LoanStatus.ACTIVE, LoanStatus.OVERDUE]),
            LoanSchedule.due_date < today,
            LoanSchedule.status.in_([ScheduleStatus.PENDING, ScheduleStatus.PARTIAL]),
        )
        .order_by(LoanSchedule.loan_id, LoanSchedule.id)
    )
    by_loan: dict[int, list[int]] = defaultdict(list)
    for loan_id, schedule_id in result.all():
        by_loan[loan_id].append(schedule_id)
    await ctx.db.commit()

    for loan_id, schedule_ids in by_loan.items():
        try:
            async with ctx.transaction() as db:
                updated = await db.execute(
                    update(LoanSchedule)
                    .where(
                        LoanSchedule.id.in_(schedule_ids),
                        LoanSchedule.status.in_([ScheduleStatus.PENDING, ScheduleStatus.PARTIAL]),
                    )
                    .values(status=ScheduleStatus.OVERDUE)
                    .execution_options(synchronize_session=False)
                )
                await mark_loan_overdue(ctx, loan_id)
            run.processed += updated.rowcount
        except LedgerError as exc:
            logger.warning("Overdue marking failed for loan %d: %s", loan_id, exc.message)
            run.record_failure(loan_id, exc.message)
        except Exception as exc:
            logger.exception("Overdue marking failed for loan %d", loan_id)
            await ctx.db.rollback()
            run.record_failure(loan_id, str(exc))
        await ctx.db.commit()

    logger.info(
        "Overdue check as of %s: %d installments across %d loans (%d failed)",
        today, run.processed, len(by_loan), run.failed,
    )
    return run


# ---------------------------------------------------------------------------
# Fixed deposits
# ---------------------------------------------------------------------------

async def accrue_fixed_deposit_interest(
    ctx: LedgerContext, as_of: date | None = None
) -> BatchRunResult:
    """Daily interest accrual for every ACTIVE deposit not yet accrued today."""
    today = as_of or date.today()
    run = BatchRunResult(job="accrue_fixed_deposit_interest", as_of=today)

    deposit_ids = await list_deposits_due_for_accrual(ctx, today)
    await ctx.db.commit()

    for deposit_id in deposit_ids:
        try:
            outcome = await accrue_interest_for_deposit(ctx, deposit_id, today)
        except Exception as exc:
            logger.exception("Interest accrual crashed for deposit %d", deposit_id)
            await ctx.db.rollback()
            run.record_failure(deposit_id, str(exc))
            continue
        if not outcome.ok:
            run.record_failure(deposit_id, outcome.message or outcome.error.value)
        elif outcome.interest > 0:
            run.processed += 1
            run.total_amount += outcome.interest
        else:
            run.skipped += 1
        await ctx.db.commit()

    logger.info(
        "Interest accrual as of %s: %d deposits, total %s (%d failed)",
        today, run.processed, run.total_amount, run.failed,
    )
    return run


async def process_matured_fixed_deposits(
    ctx: LedgerContext, as_of: date | None = None
) -> BatchRunResult:
    """Pay out or roll over every ACTIVE deposit whose maturity date has arrived."""
    today = as_of or date.today()
    run = BatchRunResult(job="process_matured_fixed_deposits", as_of=today)

    deposit_ids = await list_matured_deposits(ctx, today)
    await ctx.db.commit()

    for deposit_id in deposit_ids:
        try:
            outcome = await mature_deposit(ctx, deposit_id, today)
        except Exception as exc:
            logger.exception("Maturity processing crashed for deposit %d", deposit_id)
            await ctx.db.rollback()
            run.record_failure(deposit_id, str(exc))
            continue
        if outcome.ok:
            run.processed += 1
            run.total_amount += outcome.amount
        else:
            run.record_failure(deposit_id, outcome.message or outcome.error.value)
        await ctx.db.commit()

    logger.info(
        "Maturity processing as of %s: %d deposits, total %s (%d failed)",
        today, run.processed, run.total_amount, run.failed,
    )
    return run


# ---------------------------------------------------------------------------
# Savings
# ---------------------------------------------------------------------------

async def credit_savings_interest(
    ctx: LedgerContext, as_of: date | None = None
) -> BatchRunResult:
    """Credit last month's interest to every interest-bearing savings account.

    Accounts already credited in *as_of*'s month are not selected, so only
    the first run of a month posts anything.
    """
    today = as_of or date.today()
    run = BatchRunResult(job="credit_savings_interest", as_of=today)

    account_ids = await list_accounts_due_for_interest(ctx, today)
    await ctx.db.commit()

    for account_id in account_ids:
        try:
            outcome = await credit_interest(ctx, account_id, today)
        except Exception as exc:
            logger.exception("Interest credit crashed for savings account %d", account_id)
            await ctx.db.rollback()
            run.record_failure(account_id, str(exc))
            continue
        if not outcome.ok:
            run.record_failure(account_id, outcome.message or outcome.error.value)
        elif outcome.amount > 0:
            run.processed += 1
            run.total_amount += outcome.amount
        else:
            run.skipped += 1
        await ctx.db.commit()

    logger.info(
        "Savings interest as of %s: %d accounts, total %s (%d failed)",
        today, run.processed, run.total_amount, run.failed,
    )
    return run


async def run_daily_jobs(ctx: LedgerContext, as_of: date | None = None) -> list[BatchRunResult]:
    """Overdue marking, deposit accrual, maturity, then savings interest.

    Interest up to the maturity date is accrued before the deposit is settled.
    """
    today = as_of or date.today()
    return [
        await mark_overdue_schedules(ctx, today),
        await accrue_fixed_deposit_interest(ctx, today),
        await process_matured_fixed_deposits(ctx, today),
        await credit_savings_interest(ctx, today),
    ]

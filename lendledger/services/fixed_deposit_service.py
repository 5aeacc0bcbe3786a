"""Fixed deposits: booking, daily interest accrual, maturity and early exit.

GL flows:
  booking     DR cash                  CR fixed deposits (principal)
  accrual     DR interest expense      CR interest payable
  maturity    DR fixed deposits, DR interest payable (accrued),
              DR/CR interest expense (unaccrued remainder), CR cash
  rollover    DR interest payable (accrued), DR/CR interest expense,
              CR fixed deposits (interest); a new deposit carries the
              maturity amount forward
  premature   as maturity, with interest reduced by the penalty

Interest payable is cleared to zero whenever a deposit leaves ACTIVE.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from lendledger.models.deposit import (
    FixedDeposit,
    FixedDepositRate,
    FixedDepositStatus,
    MaturityInstruction,
)
from lendledger.models.gl import SourceModule
from lendledger.money import HUNDRED, ZERO, round_money, to_decimal
from lendledger.services.amortization import calculate_fixed_deposit_interest
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.context import LedgerContext
from lendledger.services.gl.errors import (
    InvalidAmountError,
    LedgerError,
    LedgerResult,
    NotFoundError,
    StatusTransitionError,
)
from lendledger.services.gl.journal_engine import EntryMetadata, JournalLineInput, submit
from lendledger.services.sequence import ReferenceKind, generate_reference

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class FixedDepositResult(LedgerResult):
    deposit_id: int | None = None
    certificate_number: str | None = None
    status: FixedDepositStatus | None = None
    journal_entry_id: int | None = None
    amount: Decimal = ZERO
    interest: Decimal = ZERO
    penalty: Decimal = ZERO
    interest_rate: Decimal | None = None
    maturity_date: date | None = None
    rolled_over_to_id: int | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _lock_deposit(ctx: LedgerContext, deposit_id: int) -> FixedDeposit:
    result = await ctx.db.execute(
        select(FixedDeposit)
        .where(FixedDeposit.id == deposit_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    fd = result.scalar_one_or_none()
    if fd is None:
        raise NotFoundError(f"Fixed deposit {deposit_id} not found", deposit_id=deposit_id)
    if fd.status != FixedDepositStatus.ACTIVE:
        raise StatusTransitionError(
            f"Fixed deposit {fd.certificate_number} is {fd.status.value}",
            status=fd.status.value,
        )
    return fd


def _metadata(fd: FixedDeposit, source_type: str, description: str, actor: int | None) -> EntryMetadata:
    return EntryMetadata(
        description=f"{description} - {fd.certificate_number}",
        source_module=SourceModule.FIXED_DEPOSIT,
        source_type=source_type,
        source_id=fd.id,
        fixed_deposit_id=fd.id,
        created_by=actor,
    )


def _interest_settlement_lines(
    ctx: LedgerContext, fd: FixedDeposit, interest: Decimal
) -> list[JournalLineInput]:
    """Release accrued interest payable and true up expense to *interest*."""
    accrued = round_money(fd.accrued_interest)
    lines: list[JournalLineInput] = []
    if accrued > 0:
        lines.append(
            JournalLineInput(
                account_id=ctx.accounts[AccountRole.INTEREST_PAYABLE].id,
                debit_amount=accrued,
                description="Release accrued interest",
            )
        )
    difference = interest - accrued
    expense = ctx.accounts[AccountRole.INTEREST_EXPENSE].id
    if difference > 0:
        lines.append(
            JournalLineInput(account_id=expense, debit_amount=difference, description="Unaccrued interest")
        )
    elif difference < 0:
        lines.append(
            JournalLineInput(account_id=expense, credit_amount=-difference, description="Over-accrued interest")
        )
    return lines


async def _book_deposit(
    ctx: LedgerContext,
    *,
    customer_id: int,
    principal: Decimal,
    interest_rate: Decimal,
    tenure_days: int,
    start: date,
    maturity_instruction: MaturityInstruction,
    created_by: int | None,
    rolled_over_from_id: int | None = None,
) -> FixedDeposit:
    try:
        terms = calculate_fixed_deposit_interest(principal, interest_rate, tenure_days)
    except ValueError as exc:
        raise InvalidAmountError(str(exc)) from exc

    fd = FixedDeposit(
        certificate_number=await generate_reference(ctx.db, ReferenceKind.FIXED_DEPOSIT, start),
        customer_id=customer_id,
        principal_amount=principal,
        interest_rate=interest_rate,
        tenure_days=tenure_days,
        start_date=start,
        maturity_date=start + timedelta(days=tenure_days),
        interest_amount=terms.interest_amount,
        maturity_amount=terms.maturity_amount,
        accrued_interest=ZERO,
        maturity_instruction=maturity_instruction,
        status=FixedDepositStatus.ACTIVE,
        rolled_over_from_id=rolled_over_from_id,
        created_by=created_by,
    )
    ctx.db.add(fd)
    await ctx.db.flush()
    return fd


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------

async def get_applicable_rate(
    ctx: LedgerContext, amount: Decimal, tenure_days: int, on: date | None = None
) -> Decimal:
    """Best rate on the active rate card for *amount* over *tenure_days*.

    Raises ``InvalidAmountError`` when no tier covers the combination.
    """
    when = on or date.today()
    result = await ctx.db.execute(
        select(FixedDepositRate.interest_rate)
        .where(
            FixedDepositRate.is_active.is_(True),
            FixedDepositRate.min_tenure_days <= tenure_days,
            FixedDepositRate.max_tenure_days >= tenure_days,
            FixedDepositRate.min_amount <= amount,
            (FixedDepositRate.max_amount.is_(None)) | (FixedDepositRate.max_amount >= amount),
            FixedDepositRate.effective_from <= when,
            (FixedDepositRate.effective_to.is_(None)) | (FixedDepositRate.effective_to >= when),
        )
        .order_by(FixedDepositRate.interest_rate.desc())
        .limit(1)
    )
    rate = result.scalar_one_or_none()
    if rate is None:
        raise InvalidAmountError(
            f"No applicable interest rate for {amount} over {tenure_days} days",
            amount=amount,
            tenure_days=tenure_days,
        )
    return to_decimal(rate)


async def create_fixed_deposit(
    ctx: LedgerContext,
    *,
    customer_id: int,
    principal_amount,
    tenure_days: int,
    created_by: int,
    interest_rate=None,
    maturity_instruction: MaturityInstruction = MaturityInstruction.PAY_OUT,
    start_date: date | None = None,
) -> FixedDepositResult:
    """Book a deposit funded in cash: DR cash, CR fixed deposits.

    Without an explicit *interest_rate* the rate card decides.
    """
    start = start_date or date.today()
    try:
        principal = round_money(principal_amount)
        async with ctx.transaction():
            if interest_rate is None:
                rate = await get_applicable_rate(ctx, principal, tenure_days, start)
            else:
                rate = to_decimal(interest_rate)
            fd = await _book_deposit(
                ctx,
                customer_id=customer_id,
                principal=principal,
                interest_rate=rate,
                tenure_days=tenure_days,
                start=start,
                maturity_instruction=maturity_instruction,
                created_by=created_by,
            )
            posting = await submit(
                ctx,
                [
                    JournalLineInput(
                        account_id=ctx.accounts[AccountRole.CASH_BANK].id,
                        debit_amount=principal,
                        description="Fixed deposit received",
                    ),
                    JournalLineInput(
                        account_id=ctx.accounts[AccountRole.FD_LIABILITY].id,
                        credit_amount=principal,
                        description="Fixed deposit liability",
                        customer_id=customer_id,
                        reference_type="FIXED_DEPOSIT",
                        reference_id=fd.id,
                    ),
                ],
                start,
                _metadata(fd, "BOOKING", "Fixed deposit booking", created_by),
            )
            posting.raise_for_error()
            outcome = FixedDepositResult(
                deposit_id=fd.id,
                certificate_number=fd.certificate_number,
                status=fd.status,
                journal_entry_id=posting.entry_id,
                amount=principal,
                interest=round_money(fd.interest_amount),
                interest_rate=rate,
                maturity_date=fd.maturity_date,
            )
    except LedgerError as exc:
        logger.warning("Fixed deposit booking rejected: %s", exc.message)
        return FixedDepositResult.failed(exc)

    logger.info(
        "Fixed deposit %s booked: %s for %d days at %s%% (matures %s)",
        outcome.certificate_number, principal, tenure_days, outcome.interest_rate,
        outcome.maturity_date,
    )
    return outcome


# ---------------------------------------------------------------------------
# Accrual
# ---------------------------------------------------------------------------

async def accrue_interest_for_deposit(
    ctx: LedgerContext,
    deposit_id: int,
    as_of: date | None = None,
    processed_by: int | None = None,
) -> FixedDepositResult:
    """Accrue daily interest from the last accrual (or start) up to *as_of*.

    Accrual never runs past the maturity date nor beyond the contracted
    interest.  Nothing is posted when there is nothing to accrue.
    """
    today = as_of or date.today()
    actor = processed_by if processed_by is not None else ctx.settings.system_actor_id
    try:
        async with ctx.transaction():
            fd = await _lock_deposit(ctx, deposit_id)
            accrue_to = min(today, fd.maturity_date)
            days = (accrue_to - (fd.last_accrual_date or fd.start_date)).days
            accrued = round_money(fd.accrued_interest)
            entry_id = None
            amount = ZERO
            if days > 0:
                terms = calculate_fixed_deposit_interest(
                    fd.principal_amount, fd.interest_rate, fd.tenure_days
                )
                remaining = round_money(fd.interest_amount) - accrued
                amount = min(round_money(terms.daily_interest * days), remaining)
                if amount > 0:
                    posting = await submit(
                        ctx,
                        [
                            JournalLineInput(
                                account_id=ctx.accounts[AccountRole.INTEREST_EXPENSE].id,
                                debit_amount=amount,
                                description=f"Interest accrual ({days} days)",
                            ),
                            JournalLineInput(
                                account_id=ctx.accounts[AccountRole.INTEREST_PAYABLE].id,
                                credit_amount=amount,
                                description="Interest payable on fixed deposit",
                                customer_id=fd.customer_id,
                                reference_type="FIXED_DEPOSIT",
                                reference_id=fd.id,
                            ),
                        ],
                        accrue_to,
                        _metadata(fd, "ACCRUAL", "Fixed deposit interest accrual", actor),
                    )
                    posting.raise_for_error()
                    entry_id = posting.entry_id
                    fd.accrued_interest = accrued + amount
                fd.last_accrual_date = accrue_to
                await ctx.db.flush()
            outcome = FixedDepositResult(
                deposit_id=fd.id,
                certificate_number=fd.certificate_number,
                status=fd.status,
                journal_entry_id=entry_id,
                interest=amount,
            )
    except LedgerError as exc:
        logger.warning("Interest accrual for deposit %s rejected: %s", deposit_id, exc.message)
        return FixedDepositResult.failed(exc, deposit_id=deposit_id)

    if outcome.interest > 0:
        logger.debug("Accrued %s on %s", outcome.interest, outcome.certificate_number)
    return outcome


# ---------------------------------------------------------------------------
# Maturity
# ---------------------------------------------------------------------------

async def mature_deposit(
    ctx: LedgerContext,
    deposit_id: int,
    as_of: date | None = None,
    processed_by: int | None = None,
) -> FixedDepositResult:
    """Settle a matured deposit per its maturity instruction.

    PAY_OUT pays principal plus contracted interest in cash and marks the
    deposit MATURED.  ROLLOVER_PRINCIPAL_AND_INTEREST capitalises the
    interest into a new deposit for the same rate and tenure, starting on the
    old maturity date, and marks the old one ROLLED_OVER.
    """
    today = as_of or date.today()
    actor = processed_by if processed_by is not None else ctx.settings.system_actor_id
    try:
        async with ctx.transaction():
            fd = await _lock_deposit(ctx, deposit_id)
            if fd.maturity_date > today:
                raise StatusTransitionError(
                    f"Fixed deposit {fd.certificate_number} matures on {fd.maturity_date}",
                    maturity_date=fd.maturity_date,
                )

            principal = round_money(fd.principal_amount)
            interest = round_money(fd.interest_amount)
            payout = round_money(fd.maturity_amount)
            fd_liability = ctx.accounts[AccountRole.FD_LIABILITY].id
            settlement = _interest_settlement_lines(ctx, fd, interest)
            rollover = fd.maturity_instruction == MaturityInstruction.ROLLOVER_PRINCIPAL_AND_INTEREST

            if rollover:
                lines = settlement
                if interest > 0:
                    lines.append(
                        JournalLineInput(
                            account_id=fd_liability,
                            credit_amount=interest,
                            description="Interest capitalised on rollover",
                            customer_id=fd.customer_id,
                            reference_type="FIXED_DEPOSIT",
                            reference_id=fd.id,
                        )
                    )
                source_type, description = "ROLLOVER", "Fixed deposit rollover"
            else:
                lines = [
                    JournalLineInput(
                        account_id=fd_liability,
                        debit_amount=principal,
                        description="Fixed deposit principal",
                        customer_id=fd.customer_id,
                        reference_type="FIXED_DEPOSIT",
                        reference_id=fd.id,
                    ),
                    *settlement,
                    JournalLineInput(
                        account_id=ctx.accounts[AccountRole.CASH_BANK].id,
                        credit_amount=payout,
                        description="Maturity payout",
                    ),
                ]
                source_type, description = "MATURITY", "Fixed deposit maturity"

            entry_id = None
            if lines:
                posting = await submit(ctx, lines, today, _metadata(fd, source_type, description, actor))
                posting.raise_for_error()
                entry_id = posting.entry_id

            successor = None
            if rollover:
                successor = await _book_deposit(
                    ctx,
                    customer_id=fd.customer_id,
                    principal=payout,
                    interest_rate=to_decimal(fd.interest_rate),
                    tenure_days=fd.tenure_days,
                    start=fd.maturity_date,
                    maturity_instruction=fd.maturity_instruction,
                    created_by=actor,
                    rolled_over_from_id=fd.id,
                )
                fd.status = FixedDepositStatus.ROLLED_OVER
            else:
                fd.status = FixedDepositStatus.MATURED
                fd.amount_paid = payout
            fd.accrued_interest = ZERO
            fd.terminated_at = datetime.now(timezone.utc)
            await ctx.db.flush()

            outcome = FixedDepositResult(
                deposit_id=fd.id,
                certificate_number=fd.certificate_number,
                status=fd.status,
                journal_entry_id=entry_id,
                amount=payout,
                interest=interest,
                rolled_over_to_id=successor.id if successor else None,
            )
    except LedgerError as exc:
        logger.warning("Maturity of deposit %s rejected: %s", deposit_id, exc.message)
        return FixedDepositResult.failed(exc, deposit_id=deposit_id)

    logger.info(
        "Fixed deposit %s %s (amount %s)",
        outcome.certificate_number, outcome.status.value, outcome.amount,
    )
    return outcome


# ---------------------------------------------------------------------------
# Premature withdrawal
# ---------------------------------------------------------------------------

def premature_settlement(
    principal: Decimal, interest_rate, days_held: int, penalty_rate
) -> tuple[Decimal, Decimal, Decimal]:
    """(earned interest, penalty, net interest) for an early exit.

    The penalty is ``principal * penalty_rate%``; net interest is floored at
    zero so principal is always returned in full.
    """
    earned = ZERO
    if days_held > 0:
        earned = calculate_fixed_deposit_interest(principal, interest_rate, days_held).interest_amount
    penalty = round_money(principal * to_decimal(penalty_rate) / HUNDRED)
    return earned, penalty, max(ZERO, earned - penalty)


async def process_premature_withdrawal(
    ctx: LedgerContext,
    deposit_id: int,
    *,
    processed_by: int,
    withdrawal_date: date | None = None,
    reason: str | None = None,
) -> FixedDepositResult:
    """Close an ACTIVE deposit before maturity, paying principal plus net interest."""
    today = withdrawal_date or date.today()
    try:
        async with ctx.transaction():
            fd = await _lock_deposit(ctx, deposit_id)
            if today >= fd.maturity_date:
                raise StatusTransitionError(
                    f"Fixed deposit {fd.certificate_number} has reached maturity",
                    maturity_date=fd.maturity_date,
                )

            principal = round_money(fd.principal_amount)
            days_held = (today - fd.start_date).days
            _, penalty, net_interest = premature_settlement(
                principal, fd.interest_rate, days_held, ctx.settings.fd_premature_penalty_rate
            )
            payout = principal + net_interest

            lines = [
                JournalLineInput(
                    account_id=ctx.accounts[AccountRole.FD_LIABILITY].id,
                    debit_amount=principal,
                    description="Fixed deposit principal",
                    customer_id=fd.customer_id,
                    reference_type="FIXED_DEPOSIT",
                    reference_id=fd.id,
                ),
                *_interest_settlement_lines(ctx, fd, net_interest),
                JournalLineInput(
                    account_id=ctx.accounts[AccountRole.CASH_BANK].id,
                    credit_amount=payout,
                    description="Premature withdrawal payout",
                ),
            ]
            posting = await submit(
                ctx, lines, today,
                _metadata(fd, "PREMATURE_WITHDRAWAL", "Fixed deposit premature withdrawal", processed_by),
            )
            posting.raise_for_error()

            fd.status = FixedDepositStatus.PREMATURE_CLOSED
            fd.penalty_amount = penalty
            fd.amount_paid = payout
            fd.accrued_interest = ZERO
            fd.terminated_at = datetime.now(timezone.utc)
            fd.termination_reason = reason
            await ctx.db.flush()

            outcome = FixedDepositResult(
                deposit_id=fd.id,
                certificate_number=fd.certificate_number,
                status=fd.status,
                journal_entry_id=posting.entry_id,
                amount=payout,
                interest=net_interest,
                penalty=penalty,
            )
    except LedgerError as exc:
        logger.warning("Premature withdrawal of deposit %s rejected: %s", deposit_id, exc.message)
        return FixedDepositResult.failed(exc, deposit_id=deposit_id)

    logger.info(
        "Fixed deposit %s closed early: paid %s (penalty %s)",
        outcome.certificate_number, payout, penalty,
    )
    return outcome


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_fixed_deposit(ctx: LedgerContext, deposit_id: int) -> FixedDeposit | None:
    result = await ctx.db.execute(
        select(FixedDeposit)
        .where(FixedDeposit.id == deposit_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_deposits_due_for_accrual(ctx: LedgerContext, as_of: date) -> list[int]:
    result = await ctx.db.execute(
        select(FixedDeposit.id)
        .where(
            FixedDeposit.status == FixedDepositStatus.ACTIVE,
            (FixedDeposit.last_accrual_date.is_(None)) | (FixedDeposit.last_accrual_date < as_of),
        )
        .order_by(FixedDeposit.id)
    )
    return list(result.scalars().all())


async def list_matured_deposits(ctx: LedgerContext, as_of: date) -> list[int]:
    result = await ctx.db.execute(
        select(FixedDeposit.id)
        .where(
            FixedDeposit.status == FixedDepositStatus.ACTIVE,
            FixedDeposit.maturity_date <= as_of,
        )
        .order_by(FixedDeposit.maturity_date, FixedDeposit.id)
    )
    return list(result.scalars().all())

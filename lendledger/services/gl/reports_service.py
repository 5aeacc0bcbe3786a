"""Read-side balance projections built purely from posted journal lines.

``get_account_balance`` replays opening balance plus every POSTED line; the
result must equal the cached ``Account.current_balance`` at all times.
``reconcile_balances`` checks exactly that and is the correctness oracle
for the posting engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select, func as sa_func

from lendledger.models.gl import (
    Account,
    AccountType,
    BalanceSide,
    JournalEntry,
    JournalEntryLine,
    JournalStatus,
)
from lendledger.money import ZERO, round_money
from lendledger.services.gl.context import LedgerContext
from lendledger.services.gl.errors import NotFoundError
from lendledger.services.gl.journal_engine import signed_amount

logger = logging.getLogger(__name__)


@dataclass
class AccountBalance:
    account_id: int
    account_code: str
    account_name: str
    normal_balance: BalanceSide
    as_of: date | None
    opening_balance: Decimal
    debit_total: Decimal
    credit_total: Decimal
    balance: Decimal


@dataclass
class TrialBalanceRow:
    account_id: int
    account_code: str
    account_name: str
    account_type: AccountType
    normal_balance: BalanceSide
    balance: Decimal
    debit: Decimal
    credit: Decimal


@dataclass
class TrialBalance:
    as_of: date | None
    rows: list[TrialBalanceRow] = field(default_factory=list)
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit


@dataclass
class LedgerLine:
    entry_id: int
    entry_number: str
    entry_date: date
    description: str | None
    debit: Decimal
    credit: Decimal
    running_balance: Decimal


@dataclass
class LedgerStatement:
    account_id: int
    account_code: str
    start: date
    end: date
    opening_balance: Decimal
    lines: list[LedgerLine] = field(default_factory=list)
    closing_balance: Decimal = ZERO


@dataclass
class BalanceDiscrepancy:
    account_id: int
    account_code: str
    cached_balance: Decimal
    computed_balance: Decimal

    @property
    def difference(self) -> Decimal:
        return self.cached_balance - self.computed_balance


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _posted_totals_query(*, as_of: date | None = None, before: date | None = None):
    """Per-account (debit, credit) sums over POSTED lines."""
    q = (
        select(
            JournalEntryLine.account_id,
            sa_func.coalesce(sa_func.sum(JournalEntryLine.debit_amount), 0).label("dr"),
            sa_func.coalesce(sa_func.sum(JournalEntryLine.credit_amount), 0).label("cr"),
        )
        .join(JournalEntry, JournalEntry.id == JournalEntryLine.journal_entry_id)
        .where(JournalEntry.status == JournalStatus.POSTED)
        .group_by(JournalEntryLine.account_id)
    )
    if as_of is not None:
        q = q.where(JournalEntry.entry_date <= as_of)
    if before is not None:
        q = q.where(JournalEntry.entry_date < before)
    return q


async def _posted_totals(
    ctx: LedgerContext, *, as_of: date | None = None, before: date | None = None
) -> dict[int, tuple[Decimal, Decimal]]:
    result = await ctx.db.execute(_posted_totals_query(as_of=as_of, before=before))
    return {
        row.account_id: (round_money(row.dr or 0), round_money(row.cr or 0))
        for row in result.all()
    }


async def _account_row(ctx: LedgerContext, account_id: int):
    result = await ctx.db.execute(
        select(
            Account.id,
            Account.account_code,
            Account.account_name,
            Account.normal_balance,
            Account.opening_balance,
        ).where(Account.id == account_id)
    )
    row = result.one_or_none()
    if row is None:
        raise NotFoundError(f"GL account {account_id} not found", account_id=account_id)
    return row


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def get_account_balance(
    ctx: LedgerContext, account_id: int, as_of: date | None = None
) -> AccountBalance:
    """Opening balance plus the signed sum of POSTED lines dated up to *as_of*."""
    acct = await _account_row(ctx, account_id)
    q = _posted_totals_query(as_of=as_of).where(JournalEntryLine.account_id == account_id)
    row = (await ctx.db.execute(q)).one_or_none()
    debit_total = round_money(row.dr) if row else ZERO
    credit_total = round_money(row.cr) if row else ZERO
    opening = round_money(acct.opening_balance or 0)

    return AccountBalance(
        account_id=acct.id,
        account_code=acct.account_code,
        account_name=acct.account_name,
        normal_balance=acct.normal_balance,
        as_of=as_of,
        opening_balance=opening,
        debit_total=debit_total,
        credit_total=credit_total,
        balance=opening + signed_amount(acct.normal_balance, debit_total, credit_total),
    )


async def get_cached_balance(ctx: LedgerContext, account_id: int) -> Decimal:
    """The running balance maintained by the posting engine."""
    result = await ctx.db.execute(
        select(Account.current_balance).where(Account.id == account_id)
    )
    value = result.scalar_one_or_none()
    if value is None:
        raise NotFoundError(f"GL account {account_id} not found", account_id=account_id)
    return round_money(value)


async def generate_trial_balance(
    ctx: LedgerContext, as_of: date | None = None
) -> TrialBalance:
    """Trial balance over active, non-header accounts.

    Zero balances are omitted.  Each balance sits on its account's normal
    side; a contra (negative) balance is shown in the opposite column.
    """
    accounts = await ctx.db.execute(
        select(
            Account.id,
            Account.account_code,
            Account.account_name,
            Account.account_type,
            Account.normal_balance,
            Account.opening_balance,
        )
        .where(Account.is_active.is_(True), Account.is_header.is_(False))
        .order_by(Account.account_code)
    )
    totals = await _posted_totals(ctx, as_of=as_of)

    report = TrialBalance(as_of=as_of)
    for acct in accounts.all():
        dr, cr = totals.get(acct.id, (ZERO, ZERO))
        balance = round_money(acct.opening_balance or 0) + signed_amount(acct.normal_balance, dr, cr)
        if balance == 0:
            continue

        on_normal_side = balance > 0
        in_debit_column = (acct.normal_balance == BalanceSide.DEBIT) == on_normal_side
        row = TrialBalanceRow(
            account_id=acct.id,
            account_code=acct.account_code,
            account_name=acct.account_name,
            account_type=acct.account_type,
            normal_balance=acct.normal_balance,
            balance=balance,
            debit=abs(balance) if in_debit_column else ZERO,
            credit=ZERO if in_debit_column else abs(balance),
        )
        report.rows.append(row)
        report.total_debit += row.debit
        report.total_credit += row.credit

    if not report.is_balanced:
        logger.error(
            "Trial balance out of balance as of %s: debit=%s credit=%s",
            as_of, report.total_debit, report.total_credit,
        )
    return report


async def get_ledger(
    ctx: LedgerContext, account_id: int, start: date, end: date
) -> LedgerStatement:
    """General-ledger statement for one account over ``[start, end]``.

    The opening balance covers posted lines dated strictly before *start*.
    """
    acct = await _account_row(ctx, account_id)
    side = acct.normal_balance

    before = await _posted_totals(ctx, before=start)
    dr_before, cr_before = before.get(account_id, (ZERO, ZERO))
    opening = round_money(acct.opening_balance or 0) + signed_amount(side, dr_before, cr_before)

    result = await ctx.db.execute(
        select(
            JournalEntry.id,
            JournalEntry.entry_number,
            JournalEntry.entry_date,
            JournalEntryLine.description,
            JournalEntry.description.label("entry_description"),
            JournalEntryLine.debit_amount,
            JournalEntryLine.credit_amount,
        )
        .join(JournalEntry, JournalEntry.id == JournalEntryLine.journal_entry_id)
        .where(
            JournalEntryLine.account_id == account_id,
            JournalEntry.status == JournalStatus.POSTED,
            JournalEntry.entry_date >= start,
            JournalEntry.entry_date <= end,
        )
        .order_by(JournalEntry.entry_date, JournalEntry.id, JournalEntryLine.line_number)
    )

    statement = LedgerStatement(
        account_id=acct.id,
        account_code=acct.account_code,
        start=start,
        end=end,
        opening_balance=opening,
    )
    running = opening
    for row in result.all():
        debit = round_money(row.debit_amount)
        credit = round_money(row.credit_amount)
        running += signed_amount(side, debit, credit)
        statement.lines.append(
            LedgerLine(
                entry_id=row.id,
                entry_number=row.entry_number,
                entry_date=row.entry_date,
                description=row.description or row.entry_description,
                debit=debit,
                credit=credit,
                running_balance=running,
            )
        )
    statement.closing_balance = running
    return statement


async def reconcile_balances(ctx: LedgerContext) -> list[BalanceDiscrepancy]:
    """Accounts whose cached balance differs from a full replay of posted lines."""
    accounts = await ctx.db.execute(
        select(
            Account.id,
            Account.account_code,
            Account.normal_balance,
            Account.opening_balance,
            Account.current_balance,
        ).order_by(Account.account_code)
    )
    totals = await _posted_totals(ctx)

    discrepancies: list[BalanceDiscrepancy] = []
    for acct in accounts.all():
        dr, cr = totals.get(acct.id, (ZERO, ZERO))
        computed = round_money(acct.opening_balance or 0) + signed_amount(acct.normal_balance, dr, cr)
        cached = round_money(acct.current_balance or 0)
        if cached != computed:
            discrepancies.append(
                BalanceDiscrepancy(
                    account_id=acct.id,
                    account_code=acct.account_code,
                    cached_balance=cached,
                    computed_balance=computed,
                )
            )

    if discrepancies:
        logger.error("Balance reconciliation found %d discrepancies", len(discrepancies))
    else:
        logger.info("Balance reconciliation clean")
    return discrepancies

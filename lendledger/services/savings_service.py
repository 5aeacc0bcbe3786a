"""Savings accounts: opening, deposits, withdrawals and monthly interest.

Each deposit, withdrawal or interest credit posts one journal entry and moves the account
balance by an atomic SQL delta in the same unit, so the savings balance and
the savings liability account never drift apart.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update

from lendledger.models.deposit import (
    SavingsAccount,
    SavingsAccountStatus,
    SavingsTransaction,
    SavingsTransactionType,
)
from lendledger.models.gl import SourceModule
from lendledger.money import HUNDRED, ZERO, round_money, to_decimal
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.context import LedgerContext
from lendledger.services.gl.errors import (
    InsufficientBalanceError,
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
class SavingsResult(LedgerResult):
    account_id: int | None = None
    account_number: str | None = None
    transaction_reference: str | None = None
    journal_entry_id: int | None = None
    amount: Decimal = ZERO
    balance: Decimal = ZERO


def _positive(amount) -> Decimal:
    value = round_money(amount)
    if value <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {value}", amount=value)
    return value


async def _lock_account(ctx: LedgerContext, account_id: int) -> SavingsAccount:
    result = await ctx.db.execute(
        select(SavingsAccount)
        .where(SavingsAccount.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError(f"Savings account {account_id} not found", account_id=account_id)
    if account.status != SavingsAccountStatus.ACTIVE:
        raise StatusTransitionError(
            f"Savings account {account.account_number} is {account.status.value}",
            status=account.status.value,
        )
    return account


async def _move_balance(
    ctx: LedgerContext,
    account: SavingsAccount,
    txn_type: SavingsTransactionType,
    amount: Decimal,
    on: date,
    *,
    processed_by: int,
    payment_method: str,
    narration: str | None,
) -> SavingsResult:
    """Post, apply the balance delta and record the transaction (caller's unit)."""
    cash = ctx.accounts[AccountRole.CASH_BANK].id
    liability = ctx.accounts[AccountRole.SAVINGS_LIABILITY].id
    ref = {"customer_id": account.customer_id, "reference_type": "SAVINGS", "reference_id": account.id}
    is_deposit = txn_type == SavingsTransactionType.DEPOSIT

    if is_deposit:
        lines = [
            JournalLineInput(account_id=cash, debit_amount=amount, description="Cash received"),
            JournalLineInput(
                account_id=liability, credit_amount=amount,
                description="Customer savings liability", **ref,
            ),
        ]
    else:
        lines = [
            JournalLineInput(
                account_id=liability, debit_amount=amount,
                description="Customer savings liability", **ref,
            ),
            JournalLineInput(account_id=cash, credit_amount=amount, description="Cash paid out"),
        ]

    posting = await submit(
        ctx,
        lines,
        on,
        EntryMetadata(
            description=f"Savings {txn_type.value} - {account.account_number}",
            source_module=SourceModule.SAVINGS,
            source_type=txn_type.name,
            source_id=account.id,
            savings_account_id=account.id,
            created_by=processed_by,
        ),
    )
    posting.raise_for_error()
    return await _apply_and_record(
        ctx, account, txn_type, amount if is_deposit else -amount, on,
        journal_entry_id=posting.entry_id,
        processed_by=processed_by,
        payment_method=payment_method,
        narration=narration or f"{txn_type.value.title()} via {payment_method}",
    )


async def _apply_and_record(
    ctx: LedgerContext,
    account: SavingsAccount,
    txn_type: SavingsTransactionType,
    delta: Decimal,
    on: date,
    *,
    journal_entry_id: int,
    processed_by: int | None,
    payment_method: str,
    narration: str,
) -> SavingsResult:
    now = datetime.now(timezone.utc)
    result = await ctx.db.execute(
        update(SavingsAccount)
        .where(SavingsAccount.id == account.id)
        .values(balance=SavingsAccount.balance + delta, last_transaction_at=now)
        .returning(SavingsAccount.balance)
        .execution_options(synchronize_session=False)
    )
    balance_after = round_money(result.scalar_one())

    txn = SavingsTransaction(
        transaction_reference=await generate_reference(ctx.db, ReferenceKind.SAVINGS_TXN, on),
        savings_account_id=account.id,
        transaction_type=txn_type,
        amount=abs(delta),
        balance_after=balance_after,
        transaction_date=on,
        payment_method=payment_method,
        journal_entry_id=journal_entry_id,
        narration=narration,
        created_by=processed_by,
    )
    ctx.db.add(txn)
    await ctx.db.flush()
    return SavingsResult(
        account_id=account.id,
        account_number=account.account_number,
        transaction_reference=txn.transaction_reference,
        journal_entry_id=journal_entry_id,
        amount=abs(delta),
        balance=balance_after,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def open_savings_account(
    ctx: LedgerContext,
    *,
    customer_id: int,
    created_by: int,
    minimum_balance=ZERO,
    allow_withdrawal: bool = True,
    interest_rate=ZERO,
    initial_deposit=None,
    opened_on: date | None = None,
) -> SavingsResult:
    """Open an ACTIVE account, optionally funded by an initial deposit.

    *interest_rate* is the annual percentage credited monthly by
    ``credit_interest``.
    """
    on = opened_on or date.today()
    try:
        rate = to_decimal(interest_rate)
        if rate < 0:
            raise InvalidAmountError(f"Interest rate must not be negative, got {rate}", interest_rate=rate)
        async with ctx.transaction() as db:
            account = SavingsAccount(
                account_number=await generate_reference(db, ReferenceKind.SAVINGS_ACCOUNT, on),
                customer_id=customer_id,
                balance=ZERO,
                minimum_balance=round_money(minimum_balance),
                allow_withdrawal=allow_withdrawal,
                interest_rate=rate,
                opened_on=on,
                status=SavingsAccountStatus.ACTIVE,
                created_by=created_by,
            )
            db.add(account)
            await db.flush()

            if initial_deposit is not None:
                outcome = await _move_balance(
                    ctx, account, SavingsTransactionType.DEPOSIT, _positive(initial_deposit), on,
                    processed_by=created_by, payment_method="cash", narration="Opening deposit",
                )
            else:
                outcome = SavingsResult(account_id=account.id, account_number=account.account_number)
    except LedgerError as exc:
        logger.warning("Savings account opening rejected: %s", exc.message)
        return SavingsResult.failed(exc)

    logger.info("Opened savings account %s for customer %d", outcome.account_number, customer_id)
    return outcome


async def process_deposit(
    ctx: LedgerContext,
    account_id: int,
    amount,
    *,
    processed_by: int,
    payment_method: str = "cash",
    transaction_date: date | None = None,
    narration: str | None = None,
) -> SavingsResult:
    """DR cash, CR savings liability; the account balance grows by *amount*."""
    on = transaction_date or date.today()
    try:
        value = _positive(amount)
        async with ctx.transaction():
            account = await _lock_account(ctx, account_id)
            outcome = await _move_balance(
                ctx, account, SavingsTransactionType.DEPOSIT, value, on,
                processed_by=processed_by, payment_method=payment_method, narration=narration,
            )
    except LedgerError as exc:
        logger.warning("Deposit to savings account %s rejected: %s", account_id, exc.message)
        return SavingsResult.failed(exc, account_id=account_id)

    logger.info(
        "Deposit %s to %s: %s (balance %s)",
        outcome.transaction_reference, outcome.account_number, value, outcome.balance,
    )
    return outcome


async def process_withdrawal(
    ctx: LedgerContext,
    account_id: int,
    amount,
    *,
    processed_by: int,
    payment_method: str = "cash",
    transaction_date: date | None = None,
    narration: str | None = None,
) -> SavingsResult:
    """DR savings liability, CR cash.

    Rejected with ``INSUFFICIENT_BALANCE`` when the balance cannot cover the
    amount or the withdrawal would breach the minimum balance.
    """
    on = transaction_date or date.today()
    try:
        value = _positive(amount)
        async with ctx.transaction():
            account = await _lock_account(ctx, account_id)
            if not account.allow_withdrawal:
                raise StatusTransitionError(
                    f"Withdrawals are not allowed on {account.account_number}",
                    account_number=account.account_number,
                )
            balance = round_money(account.balance)
            if value > balance:
                raise InsufficientBalanceError(
                    f"Insufficient balance: available {balance}, requested {value}",
                    available=balance,
                    requested=value,
                )
            minimum = round_money(account.minimum_balance)
            if balance - value < minimum:
                raise InsufficientBalanceError(
                    f"Withdrawal would breach minimum balance requirement of {minimum}",
                    available=balance - minimum,
                    requested=value,
                    minimum_balance=minimum,
                )
            outcome = await _move_balance(
                ctx, account, SavingsTransactionType.WITHDRAWAL, value, on,
                processed_by=processed_by, payment_method=payment_method, narration=narration,
            )
    except LedgerError as exc:
        logger.warning("Withdrawal from savings account %s rejected: %s", account_id, exc.message)
        return SavingsResult.failed(exc, account_id=account_id)

    logger.info(
        "Withdrawal %s from %s: %s (balance %s)",
        outcome.transaction_reference, outcome.account_number, value, outcome.balance,
    )
    return outcome


# ---------------------------------------------------------------------------
# Interest
# ---------------------------------------------------------------------------

def monthly_interest(balance: Decimal, annual_rate) -> Decimal:
    """One month of simple interest: ``balance * rate / 100 / 12``, to the cent."""
    return round_money(round_money(balance) * to_decimal(annual_rate) / HUNDRED / 12)


async def credit_interest(
    ctx: LedgerContext,
    account_id: int,
    as_of: date | None = None,
    processed_by: int | None = None,
) -> SavingsResult:
    """Credit last month's interest on the current balance.

    DR interest expense, CR savings liability; the account balance grows by
    the interest.  An account is credited at most once per calendar month
    and only for months it was open from the start; otherwise nothing is
    posted and the result carries a zero amount.
    """
    today = as_of or date.today()
    month_start = today.replace(day=1)
    covered = (month_start - timedelta(days=1)).strftime("%Y-%m")
    actor = processed_by if processed_by is not None else ctx.settings.system_actor_id
    try:
        async with ctx.transaction():
            account = await _lock_account(ctx, account_id)
            already = account.last_interest_date is not None and account.last_interest_date >= month_start
            interest = ZERO
            if not already and account.opened_on < month_start:
                interest = monthly_interest(account.balance, account.interest_rate)
                account.last_interest_date = today
                await ctx.db.flush()

            if interest > 0:
                posting = await submit(
                    ctx,
                    [
                        JournalLineInput(
                            account_id=ctx.accounts[AccountRole.INTEREST_EXPENSE].id,
                            debit_amount=interest,
                            description=f"Savings interest for {covered}",
                        ),
                        JournalLineInput(
                            account_id=ctx.accounts[AccountRole.SAVINGS_LIABILITY].id,
                            credit_amount=interest,
                            description="Customer savings liability",
                            customer_id=account.customer_id,
                            reference_type="SAVINGS",
                            reference_id=account.id,
                        ),
                    ],
                    today,
                    EntryMetadata(
                        description=f"Savings interest {covered} - {account.account_number}",
                        source_module=SourceModule.SAVINGS,
                        source_type=SavingsTransactionType.INTEREST.name,
                        source_id=account.id,
                        savings_account_id=account.id,
                        created_by=actor,
                    ),
                )
                posting.raise_for_error()
                outcome = await _apply_and_record(
                    ctx, account, SavingsTransactionType.INTEREST, interest, today,
                    journal_entry_id=posting.entry_id,
                    processed_by=actor,
                    payment_method="internal",
                    narration=f"Interest for {covered} at {account.interest_rate}% p.a.",
                )
            else:
                outcome = SavingsResult(
                    account_id=account.id,
                    account_number=account.account_number,
                    balance=round_money(account.balance),
                )
    except LedgerError as exc:
        logger.warning("Interest credit for savings account %s rejected: %s", account_id, exc.message)
        return SavingsResult.failed(exc, account_id=account_id)

    if outcome.amount > 0:
        logger.debug("Credited %s interest to %s", outcome.amount, outcome.account_number)
    return outcome


async def list_accounts_due_for_interest(ctx: LedgerContext, as_of: date) -> list[int]:
    """ACTIVE interest-bearing accounts not yet credited in *as_of*'s month."""
    month_start = as_of.replace(day=1)
    result = await ctx.db.execute(
        select(SavingsAccount.id)
        .where(
            SavingsAccount.status == SavingsAccountStatus.ACTIVE,
            SavingsAccount.interest_rate > 0,
            SavingsAccount.opened_on < month_start,
            (SavingsAccount.last_interest_date.is_(None))
            | (SavingsAccount.last_interest_date < month_start),
        )
        .order_by(SavingsAccount.id)
    )
    return list(result.scalars().all())


async def get_savings_account(ctx: LedgerContext, account_id: int) -> SavingsAccount | None:
    result = await ctx.db.execute(
        select(SavingsAccount)
        .where(SavingsAccount.id == account_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()

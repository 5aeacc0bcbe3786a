"""Chart of Accounts service.

Accounts form a tree: header accounts aggregate their children and are never
posted to; every other account is postable.  A child's level is one below
its parent's.  Codes are unique and never reused.
"""

import logging
from decimal import Decimal

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.gl import (
    Account,
    AccountType,
    BalanceSide,
    JournalEntry,
    JournalEntryLine,
    JournalStatus,
)
from lendledger.money import ZERO, round_money
from lendledger.services.gl.errors import (
    DuplicateReferenceError,
    InvalidAccountError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

MAX_LEVEL = 5

# Normal side implied by the account type; contra accounts override it.
DEFAULT_NORMAL_BALANCE = {
    AccountType.ASSET: BalanceSide.DEBIT,
    AccountType.EXPENSE: BalanceSide.DEBIT,
    AccountType.LIABILITY: BalanceSide.CREDIT,
    AccountType.EQUITY: BalanceSide.CREDIT,
    AccountType.INCOME: BalanceSide.CREDIT,
}


async def list_accounts(
    db: AsyncSession,
    *,
    account_type: AccountType | None = None,
    parent_id: int | None = None,
    active_only: bool = False,
    postable_only: bool = False,
    search: str | None = None,
) -> list[Account]:
    """List GL accounts ordered by code, with optional filters."""
    q = select(Account).order_by(Account.account_code)

    if account_type:
        q = q.where(Account.account_type == account_type)
    if parent_id is not None:
        q = q.where(Account.parent_id == parent_id)
    if active_only:
        q = q.where(Account.is_active.is_(True))
    if postable_only:
        q = q.where(Account.is_header.is_(False))
    if search:
        pattern = f"%{search}%"
        q = q.where(
            Account.account_name.ilike(pattern) | Account.account_code.ilike(pattern)
        )

    result = await db.execute(q)
    return list(result.scalars().all())


async def get_account(db: AsyncSession, account_id: int) -> Account | None:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def get_account_by_code(db: AsyncSession, code: str) -> Account | None:
    result = await db.execute(select(Account).where(Account.account_code == code))
    return result.scalar_one_or_none()


async def create_account(
    db: AsyncSession,
    *,
    account_code: str,
    account_name: str,
    account_type: AccountType,
    normal_balance: BalanceSide | None = None,
    parent_id: int | None = None,
    is_header: bool = False,
    is_system_account: bool = False,
    opening_balance: Decimal = ZERO,
    description: str | None = None,
) -> Account:
    """Create a GL account under an optional header parent.

    The cached balance starts at the opening balance so replaying posted
    lines on top of it always reproduces ``current_balance``.
    """
    level = 1
    if parent_id is not None:
        parent = await get_account(db, parent_id)
        if parent is None:
            raise NotFoundError(f"Parent account {parent_id} not found", parent_id=parent_id)
        if not parent.is_header:
            raise InvalidAccountError(
                f"Parent account {parent.account_code} is not a header account",
                parent_code=parent.account_code,
            )
        level = parent.level + 1
        if level > MAX_LEVEL:
            raise InvalidAccountError(f"Maximum hierarchy depth is {MAX_LEVEL} levels")

    if await get_account_by_code(db, account_code) is not None:
        raise DuplicateReferenceError(
            f"Account code '{account_code}' already exists", account_code=account_code
        )

    opening = round_money(opening_balance)
    if is_header and opening != 0:
        raise InvalidAccountError("Header accounts cannot carry an opening balance")

    account = Account(
        account_code=account_code,
        account_name=account_name,
        description=description,
        account_type=account_type,
        normal_balance=normal_balance or DEFAULT_NORMAL_BALANCE[account_type],
        parent_id=parent_id,
        level=level,
        is_header=is_header,
        is_active=True,
        is_system_account=is_system_account,
        opening_balance=opening,
        current_balance=opening,
    )
    db.add(account)
    await db.flush()
    logger.info("Created GL account %s: %s", account.account_code, account.account_name)
    return account


async def deactivate_account(db: AsyncSession, account_id: int) -> Account:
    """Stop further postings to an account.

    System accounts, and accounts with a non-zero balance or any posted
    line, cannot be deactivated.
    """
    result = await db.execute(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
    if account.is_system_account:
        raise InvalidAccountError(
            f"System account {account.account_code} cannot be deactivated",
            account_code=account.account_code,
        )
    if round_money(account.current_balance) != 0:
        raise InvalidAccountError(
            f"Account {account.account_code} has a balance of {account.current_balance}",
            account_code=account.account_code,
            balance=round_money(account.current_balance),
        )
    has_posted = await db.execute(
        select(
            exists().where(
                JournalEntryLine.account_id == account_id,
                JournalEntryLine.journal_entry_id == JournalEntry.id,
                JournalEntry.status == JournalStatus.POSTED,
            )
        )
    )
    if has_posted.scalar():
        raise InvalidAccountError(
            f"Account {account.account_code} has posted transactions",
            account_code=account.account_code,
        )
    account.is_active = False
    await db.flush()
    logger.info("Deactivated GL account %s", account.account_code)
    return account

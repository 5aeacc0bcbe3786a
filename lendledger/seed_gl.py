"""Seed data for the General Ledger and the fixed deposit rate card.

Creates the default Chart of Accounts (idempotent).  Headers sit at level 1,
posting accounts at level 2.  Every account the workflow services post to is
flagged as a system account.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.deposit import FixedDepositRate
from lendledger.models.gl import Account, AccountType, BalanceSide

logger = logging.getLogger(__name__)

A = AccountType.ASSET
L = AccountType.LIABILITY
E = AccountType.EQUITY
I = AccountType.INCOME  # noqa: E741
X = AccountType.EXPENSE
DR = BalanceSide.DEBIT
CR = BalanceSide.CREDIT

# (code, name, type, normal side, parent code, is header)
DEFAULT_CHART: list[tuple[str, str, AccountType, BalanceSide, str | None, bool]] = [
    # Assets
    ("1000", "Assets",                   A, DR, None,   True),
    ("1100", "Cash and Bank",            A, DR, "1000", False),
    ("1200", "Accounts Receivable",      A, DR, None,   True),
    ("1300", "Loans Receivable",         A, DR, "1200", False),
    ("1400", "Provision for Bad Debts",  A, CR, "1200", False),
    ("1500", "Fixed Assets",             A, DR, None,   True),
    ("1510", "Furniture and Fittings",   A, DR, "1500", False),
    ("1520", "Computer Equipment",       A, DR, "1500", False),
    ("1530", "Motor Vehicles",           A, DR, "1500", False),
    ("1600", "Accumulated Depreciation", A, CR, "1500", False),
    # Liabilities
    ("2000", "Liabilities",              L, CR, None,   True),
    ("2100", "Customer Savings",         L, CR, "2000", False),
    ("2200", "Fixed Deposits",           L, CR, "2000", False),
    ("2300", "Interest Payable",         L, CR, "2000", False),
    ("2400", "Accounts Payable",         L, CR, "2000", False),
    ("2500", "Taxes Payable",            L, CR, "2000", False),
    # Equity
    ("3000", "Equity",                   E, CR, None,   True),
    ("3100", "Share Capital",            E, CR, "3000", False),
    ("3200", "Retained Earnings",        E, CR, "3000", False),
    ("3300", "Reserves",                 E, CR, "3000", False),
    # Income
    ("4000", "Income",                   I, CR, None,   True),
    ("4100", "Interest Income",          I, CR, "4000", False),
    ("4200", "Fee Income",               I, CR, "4000", False),
    ("4300", "Other Income",             I, CR, "4000", False),
    # Expenses
    ("5000", "Expenses",                 X, DR, None,   True),
    ("5100", "Loan Loss Provision",      X, DR, "5000", False),
    ("5200", "Interest Expense",         X, DR, "5000", False),
    ("5300", "Salaries and Wages",       X, DR, "5000", False),
    ("5400", "Rent Expense",             X, DR, "5000", False),
    ("5500", "Utilities",                X, DR, "5000", False),
    ("5600", "Office Supplies",          X, DR, "5000", False),
    ("5700", "Depreciation Expense",     X, DR, "5000", False),
    ("5800", "Bank Charges",             X, DR, "5000", False),
    ("5900", "Other Expenses",           X, DR, "5000", False),
]

SYSTEM_CODES = {"1100", "1300", "2100", "2200", "2300", "4100", "4200", "5200"}

# (min tenure days, max tenure days, min amount, annual rate %)
DEFAULT_FD_RATES: list[tuple[int, int, Decimal, Decimal]] = [
    (30,  90,  Decimal("50000"), Decimal("8")),
    (91,  180, Decimal("50000"), Decimal("10")),
    (181, 365, Decimal("50000"), Decimal("12")),
    (366, 730, Decimal("50000"), Decimal("14")),
]
RATE_CARD_EFFECTIVE_FROM = date(2000, 1, 1)


async def seed_chart_of_accounts(db: AsyncSession) -> int:
    """Create any missing default accounts.  Returns how many were created."""
    result = await db.execute(select(Account))
    by_code = {a.account_code: a for a in result.scalars().all()}

    created = 0
    for code, name, account_type, side, parent_code, is_header in DEFAULT_CHART:
        if code in by_code:
            continue
        parent = by_code.get(parent_code) if parent_code else None
        account = Account(
            account_code=code,
            account_name=name,
            account_type=account_type,
            normal_balance=side,
            parent_id=parent.id if parent else None,
            level=parent.level + 1 if parent else 1,
            is_header=is_header,
            is_active=True,
            is_system_account=code in SYSTEM_CODES,
        )
        db.add(account)
        await db.flush()
        by_code[code] = account
        created += 1

    if created:
        logger.info("Seeded %d chart of accounts entries", created)
    return created


async def seed_fixed_deposit_rates(db: AsyncSession) -> int:
    """Create the default rate card if none exists.  Returns how many tiers were created."""
    existing = await db.execute(select(FixedDepositRate.id).limit(1))
    if existing.first() is not None:
        return 0

    for min_days, max_days, min_amount, rate in DEFAULT_FD_RATES:
        db.add(
            FixedDepositRate(
                min_tenure_days=min_days,
                max_tenure_days=max_days,
                min_amount=min_amount,
                max_amount=None,
                interest_rate=rate,
                is_active=True,
                effective_from=RATE_CARD_EFFECTIVE_FROM,
            )
        )
    await db.flush()
    logger.info("Seeded %d fixed deposit rate tiers", len(DEFAULT_FD_RATES))
    return len(DEFAULT_FD_RATES)

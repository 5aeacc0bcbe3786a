"""Loan amortization and fixed-deposit interest calculators.

Pure functions: no I/O, no floats.  Every monetary output is rounded
half-up to the cent; the arithmetic behind it runs in ``MONEY_CONTEXT``.

Reducing balance (EMI):
    r   = annual_rate / 100 / 12
    EMI = P · r · (1+r)^n / ((1+r)^n − 1)
    interest_i  = balance · r
    principal_i = EMI − interest_i

Flat rate:
    total_interest = P · annual_rate/100 · n/12, split evenly over n months.

In both methods the final installment takes whatever principal is left, so
the principal column sums to P exactly and the closing balance is 0.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, localcontext

from dateutil.relativedelta import relativedelta

from lendledger.money import HUNDRED, MONEY_CONTEXT, ZERO, round_money, to_decimal

logger = logging.getLogger(__name__)

SIX_PLACES = Decimal("0.000001")
DAYS_IN_YEAR = Decimal("365")
MONTHS_IN_YEAR = Decimal("12")

REDUCING_BALANCE = "reducing_balance"
FLAT_RATE = "flat_rate"


@dataclass(frozen=True)
class ScheduleLine:
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    outstanding_balance: Decimal


@dataclass
class ScheduleCalculation:
    principal: Decimal
    monthly_instalment: Decimal
    total_interest: Decimal
    total_repayment: Decimal
    entries: list[ScheduleLine] = field(default_factory=list)


@dataclass(frozen=True)
class FixedDepositInterest:
    interest_amount: Decimal
    maturity_amount: Decimal
    daily_interest: Decimal


def _check_inputs(principal: Decimal, annual_rate: Decimal, tenure_months: int) -> None:
    if principal <= 0:
        raise ValueError(f"principal must be positive, got {principal}")
    if annual_rate < 0:
        raise ValueError(f"annual_rate must not be negative, got {annual_rate}")
    if tenure_months < 1:
        raise ValueError(f"tenure_months must be at least 1, got {tenure_months}")


def calculate_emi(principal, annual_rate, tenure_months: int) -> Decimal:
    """Unrounded equated monthly instalment (``P / n`` at a zero rate)."""
    p = to_decimal(principal)
    rate = to_decimal(annual_rate)
    _check_inputs(p, rate, tenure_months)
    with localcontext(MONEY_CONTEXT):
        r = rate / HUNDRED / MONTHS_IN_YEAR
        if r == 0:
            return p / tenure_months
        growth = (1 + r) ** tenure_months
        return p * r * growth / (growth - 1)


def calculate_reducing_balance_schedule(
    principal, annual_rate, tenure_months: int, start_date: date
) -> ScheduleCalculation:
    p = round_money(principal)
    rate = to_decimal(annual_rate)
    emi = round_money(calculate_emi(p, rate, tenure_months))

    entries: list[ScheduleLine] = []
    balance = p
    total_interest = ZERO
    with localcontext(MONEY_CONTEXT):
        r = rate / HUNDRED / MONTHS_IN_YEAR
        for i in range(1, tenure_months + 1):
            interest = round_money(balance * r)
            if i == tenure_months:
                principal_part = balance
            else:
                principal_part = min(emi - interest, balance)
            balance -= principal_part
            total_interest += interest
            entries.append(
                ScheduleLine(
                    installment_number=i,
                    due_date=start_date + relativedelta(months=i),
                    principal_due=principal_part,
                    interest_due=interest,
                    total_due=principal_part + interest,
                    outstanding_balance=balance,
                )
            )

    return ScheduleCalculation(
        principal=p,
        monthly_instalment=emi,
        total_interest=total_interest,
        total_repayment=p + total_interest,
        entries=entries,
    )


def calculate_flat_rate_schedule(
    principal, annual_rate, tenure_months: int, start_date: date
) -> ScheduleCalculation:
    p = round_money(principal)
    rate = to_decimal(annual_rate)
    _check_inputs(p, rate, tenure_months)

    with localcontext(MONEY_CONTEXT):
        total_interest = round_money(
            p * rate / HUNDRED * Decimal(tenure_months) / MONTHS_IN_YEAR
        )
        monthly_principal = round_money(p / tenure_months)
        monthly_interest = round_money(total_interest / tenure_months)
        monthly_instalment = round_money((p + total_interest) / tenure_months)

    entries: list[ScheduleLine] = []
    balance = p
    interest_left = total_interest
    for i in range(1, tenure_months + 1):
        if i == tenure_months:
            principal_part, interest = balance, interest_left
        else:
            principal_part = min(monthly_principal, balance)
            interest = min(monthly_interest, interest_left)
        balance -= principal_part
        interest_left -= interest
        entries.append(
            ScheduleLine(
                installment_number=i,
                due_date=start_date + relativedelta(months=i),
                principal_due=principal_part,
                interest_due=interest,
                total_due=principal_part + interest,
                outstanding_balance=balance,
            )
        )

    return ScheduleCalculation(
        principal=p,
        monthly_instalment=monthly_instalment,
        total_interest=total_interest,
        total_repayment=p + total_interest,
        entries=entries,
    )


def calculate_schedule(
    principal,
    annual_rate,
    tenure_months: int,
    method: str = REDUCING_BALANCE,
    start_date: date | None = None,
) -> ScheduleCalculation:
    """Installment schedule for *method* (``reducing_balance`` or ``flat_rate``)."""
    start = start_date or date.today()
    method = getattr(method, "value", method)
    if method == REDUCING_BALANCE:
        return calculate_reducing_balance_schedule(principal, annual_rate, tenure_months, start)
    if method == FLAT_RATE:
        return calculate_flat_rate_schedule(principal, annual_rate, tenure_months, start)
    raise ValueError(f"Unknown interest method: {method}")


def calculate_fixed_deposit_interest(principal, annual_rate, tenure_days: int) -> FixedDepositInterest:
    """Simple interest ``P · R · T / 365``; daily interest is kept to 6 places."""
    p = to_decimal(principal)
    rate = to_decimal(annual_rate)
    if p <= 0:
        raise ValueError(f"principal must be positive, got {p}")
    if rate < 0:
        raise ValueError(f"annual_rate must not be negative, got {rate}")
    if tenure_days < 1:
        raise ValueError(f"tenure_days must be at least 1, got {tenure_days}")

    with localcontext(MONEY_CONTEXT):
        interest = p * rate / HUNDRED * Decimal(tenure_days) / DAYS_IN_YEAR
        daily = interest / tenure_days
        return FixedDepositInterest(
            interest_amount=round_money(interest),
            maturity_amount=round_money(p + interest),
            daily_interest=round_money(daily, SIX_PLACES),
        )

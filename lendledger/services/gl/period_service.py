"""Financial period control.

Monthly periods move strictly one way:
  OPEN → SOFT_CLOSE → HARD_CLOSE

A month without a row is OPEN.  SOFT_CLOSE still accepts postings (with a
warning); HARD_CLOSE rejects every create or post dated inside the month.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.gl import (
    FinancialPeriod,
    JournalEntry,
    JournalStatus,
    PeriodStatus,
)
from lendledger.services.gl.context import LedgerContext
from lendledger.services.gl.errors import (
    LedgerError,
    LedgerResult,
    PeriodClosedError,
    PeriodNotClosableError,
    PeriodTransitionError,
)

logger = logging.getLogger(__name__)

_STATUS_ORDER = {
    PeriodStatus.OPEN: 0,
    PeriodStatus.SOFT_CLOSE: 1,
    PeriodStatus.HARD_CLOSE: 2,
}


def financial_period_for(on: date) -> tuple[int, int]:
    """(year, month) of the period containing *on*."""
    return on.year, on.month


def period_date_range(year: int, month: int) -> tuple[date, date]:
    _, last_day = calendar.monthrange(year, month)
    return date(year, month, 1), date(year, month, last_day)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_period(
    db: AsyncSession, year: int, month: int, *, for_update: bool = False
) -> FinancialPeriod | None:
    q = select(FinancialPeriod).where(
        FinancialPeriod.year == year, FinancialPeriod.month == month
    )
    if for_update:
        q = q.with_for_update()
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def get_period_status(db: AsyncSession, on: date) -> PeriodStatus:
    """Status of the month containing *on*, read fresh from the database.

    Takes a shared row lock so a concurrent close waits for the posting.
    """
    result = await db.execute(
        select(FinancialPeriod.status)
        .where(FinancialPeriod.year == on.year, FinancialPeriod.month == on.month)
        .with_for_update(read=True)
    )
    return result.scalar_one_or_none() or PeriodStatus.OPEN


async def ensure_period_open(db: AsyncSession, on: date) -> PeriodStatus:
    """Raise ``PeriodClosedError`` unless the month containing *on* accepts postings."""
    status = await get_period_status(db, on)
    if status == PeriodStatus.HARD_CLOSE:
        raise PeriodClosedError(
            f"Period {on.year}-{on.month:02d} is closed for posting",
            year=on.year,
            month=on.month,
        )
    if status == PeriodStatus.SOFT_CLOSE:
        logger.warning("Posting into soft-closed period %d-%02d", on.year, on.month)
    return status


async def list_periods(db: AsyncSession, *, year: int | None = None) -> list[FinancialPeriod]:
    q = select(FinancialPeriod).order_by(FinancialPeriod.year, FinancialPeriod.month)
    if year:
        q = q.where(FinancialPeriod.year == year)
    result = await db.execute(q)
    return list(result.scalars().all())


async def count_blocking_entries(db: AsyncSession, year: int, month: int) -> int:
    """Entries dated in the month that are still DRAFT or PENDING_APPROVAL."""
    start, end = period_date_range(year, month)
    result = await db.execute(
        select(sa_func.count(JournalEntry.id)).where(
            JournalEntry.entry_date >= start,
            JournalEntry.entry_date <= end,
            JournalEntry.status.in_([JournalStatus.DRAFT, JournalStatus.PENDING_APPROVAL]),
        )
    )
    return result.scalar() or 0


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------

@dataclass(kw_only=True)
class PeriodCloseResult(LedgerResult):
    year: int | None = None
    month: int | None = None
    status: PeriodStatus | None = None
    blocking_entries: int = 0


async def close_period(
    ctx: LedgerContext,
    year: int,
    month: int,
    close_type: PeriodStatus,
    closed_by: int,
    notes: str | None = None,
) -> PeriodCloseResult:
    """Move a month to SOFT_CLOSE or HARD_CLOSE.

    Fails with the count of blocking entries if anything dated in the month
    is not yet posted, and on any backward or same-state transition.
    """
    try:
        async with ctx.transaction() as db:
            if close_type not in (PeriodStatus.SOFT_CLOSE, PeriodStatus.HARD_CLOSE):
                raise PeriodTransitionError(
                    f"Cannot close a period to {close_type.value}", target=close_type.value
                )

            period = await get_period(db, year, month, for_update=True)
            current = period.status if period else PeriodStatus.OPEN
            if _STATUS_ORDER[close_type] <= _STATUS_ORDER[current]:
                raise PeriodTransitionError(
                    f"Cannot move period {year}-{month:02d} from {current.value} "
                    f"to {close_type.value}",
                    current=current.value,
                    target=close_type.value,
                )

            pending_count = await count_blocking_entries(db, year, month)
            if pending_count > 0:
                raise PeriodNotClosableError(
                    f"Cannot close: {pending_count} unposted journal entries in this period",
                    blocking_entries=pending_count,
                )

            if period is None:
                start, end = period_date_range(year, month)
                period = FinancialPeriod(year=year, month=month, start_date=start, end_date=end)
                db.add(period)

            period.status = close_type
            period.closed_by = closed_by
            period.closed_at = datetime.now(timezone.utc)
            period.closing_notes = notes
            await db.flush()
            period_name = period.name
    except PeriodNotClosableError as exc:
        logger.warning("Period %d-%02d not closed: %s", year, month, exc.message)
        return PeriodCloseResult.failed(exc, blocking_entries=exc.details["blocking_entries"])
    except LedgerError as exc:
        logger.warning("Period %d-%02d not closed: %s", year, month, exc.message)
        return PeriodCloseResult.failed(exc)

    logger.info("Period %s set to %s by user %d", period_name, close_type.value, closed_by)
    return PeriodCloseResult(year=year, month=month, status=close_type)

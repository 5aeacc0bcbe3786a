"""Tests for financial period control.

Tests cover:
- Months without a row are OPEN
- Soft close warns but accepts postings; hard close rejects create and post
- Transitions only move forward
- Unposted entries block a close and the count is reported
"""

from datetime import date

from lendledger.models.gl import PeriodStatus
from lendledger.services.gl import journal_engine, period_service
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.context import Actor
from lendledger.services.gl.errors import LedgerErrorKind
from tests.conftest import BUSINESS_DATE, line, meta


def _lines(accounts, amount="250"):
    return [
        line(accounts[AccountRole.CASH_BANK], dr=amount),
        line(accounts[AccountRole.FEE_INCOME], cr=amount),
    ]


class TestPeriodHelpers:
    def test_date_range_handles_leap_february(self):
        assert period_service.period_date_range(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_financial_period_for(self):
        assert period_service.financial_period_for(date(2025, 12, 31)) == (2025, 12)

    async def test_missing_period_is_open(self, ctx):
        assert await period_service.get_period_status(ctx.db, BUSINESS_DATE) == PeriodStatus.OPEN


class TestClosePeriod:
    async def test_hard_close_rejects_postings(self, ctx, accounts):
        closed = await period_service.close_period(ctx, 2025, 3, PeriodStatus.HARD_CLOSE, closed_by=9)
        assert closed.ok
        assert closed.status == PeriodStatus.HARD_CLOSE

        result = await journal_engine.submit(ctx, _lines(accounts), BUSINESS_DATE, meta())
        assert result.error == LedgerErrorKind.PERIOD_CLOSED
        assert result.details == {"year": 2025, "month": 3}

        next_month = await journal_engine.submit(ctx, _lines(accounts), date(2025, 4, 1), meta())
        assert next_month.ok

    async def test_soft_close_still_accepts_postings(self, ctx, accounts):
        await period_service.close_period(ctx, 2025, 3, PeriodStatus.SOFT_CLOSE, closed_by=9)
        result = await journal_engine.submit(ctx, _lines(accounts), BUSINESS_DATE, meta())

        assert result.ok
        period = await period_service.get_period(ctx.db, 2025, 3)
        assert period.status == PeriodStatus.SOFT_CLOSE
        assert period.closed_by == 9
        assert period.name == "2025-03"

    async def test_soft_then_hard(self, ctx):
        await period_service.close_period(ctx, 2025, 3, PeriodStatus.SOFT_CLOSE, closed_by=9)
        result = await period_service.close_period(
            ctx, 2025, 3, PeriodStatus.HARD_CLOSE, closed_by=9, notes="Month end"
        )
        assert result.ok
        periods = await period_service.list_periods(ctx.db, year=2025)
        assert [(p.name, p.status, p.closing_notes) for p in periods] == [
            ("2025-03", PeriodStatus.HARD_CLOSE, "Month end"),
        ]

    async def test_no_backward_transition(self, ctx):
        await period_service.close_period(ctx, 2025, 3, PeriodStatus.HARD_CLOSE, closed_by=9)

        soft = await period_service.close_period(ctx, 2025, 3, PeriodStatus.SOFT_CLOSE, closed_by=9)
        assert soft.error == LedgerErrorKind.INVALID_PERIOD_TRANSITION
        same = await period_service.close_period(ctx, 2025, 3, PeriodStatus.HARD_CLOSE, closed_by=9)
        assert same.error == LedgerErrorKind.INVALID_PERIOD_TRANSITION

    async def test_cannot_close_to_open(self, ctx):
        result = await period_service.close_period(ctx, 2025, 3, PeriodStatus.OPEN, closed_by=9)
        assert result.error == LedgerErrorKind.INVALID_PERIOD_TRANSITION

    async def test_unposted_entries_block_close(self, ctx, accounts):
        await journal_engine.create_draft(ctx, _lines(accounts), BUSINESS_DATE, meta())
        draft = await journal_engine.create_draft(ctx, _lines(accounts), date(2025, 3, 31), meta())
        await journal_engine.submit_for_approval(ctx, draft.entry_id)
        await journal_engine.create_draft(ctx, _lines(accounts), date(2025, 4, 1), meta())

        result = await period_service.close_period(ctx, 2025, 3, PeriodStatus.HARD_CLOSE, closed_by=9)
        assert result.error == LedgerErrorKind.PERIOD_NOT_CLOSABLE
        assert result.blocking_entries == 2
        assert await period_service.get_period_status(ctx.db, BUSINESS_DATE) == PeriodStatus.OPEN

    async def test_draft_in_soft_closed_period_can_be_posted(self, ctx, accounts):
        await period_service.close_period(ctx, 2025, 3, PeriodStatus.SOFT_CLOSE, closed_by=9)
        draft = await journal_engine.create_draft(ctx, _lines(accounts), BUSINESS_DATE, meta())

        posted = await journal_engine.post(ctx, draft.entry_id, Actor(actor_id=2))
        assert posted.ok

        hard = await period_service.close_period(ctx, 2025, 3, PeriodStatus.HARD_CLOSE, closed_by=9)
        assert hard.ok

"""Tests for the double-entry journal engine.

Tests cover:
- Balance validation (pure function, no DB)
- Line input validation (cent precision, one side only)
- submit with auto-post, draft → pending approval → posted
- Segregation of duties and approval limits on post
- Header / inactive accounts rejected
- Reversal linkage, double reversal and reversal-of-reversal
- Duplicate external references
- Rejected entries leave nothing behind
- A unit that runs past its time limit is rolled back
"""

import asyncio
from decimal import Decimal

import pytest
from pydantic import ValidationError

from lendledger.config import Settings
from lendledger.models.gl import JournalEntryType, JournalStatus
from lendledger.services.gl import coa_service, journal_engine, reports_service
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.context import Actor, LedgerContext
from lendledger.services.gl.errors import (
    LedgerErrorKind,
    UnbalancedEntryError,
    ZeroValueEntryError,
)
from lendledger.services.gl.journal_engine import JournalLineInput, _validate_balance
from tests.conftest import BUSINESS_DATE, line, meta


def _cash_sale(accounts, amount="1000"):
    return [
        line(accounts[AccountRole.CASH_BANK], dr=amount),
        line(accounts[AccountRole.INTEREST_INCOME], cr=amount),
    ]


# ---------------------------------------------------------------------------
# Pure validation
# ---------------------------------------------------------------------------

class TestValidateBalance:
    def test_balanced_entry(self):
        lines = [line(1, dr="1000"), line(2, cr="600"), line(3, cr="400")]
        assert _validate_balance(lines) == (Decimal("1000"), Decimal("1000"))

    def test_unbalanced_entry(self):
        lines = [line(1, dr="1000"), line(2, cr="999.99")]
        with pytest.raises(UnbalancedEntryError) as excinfo:
            _validate_balance(lines)
        assert excinfo.value.details["total_debit"] == Decimal("1000")
        assert excinfo.value.details["total_credit"] == Decimal("999.99")

    def test_zero_entry(self):
        with pytest.raises(ZeroValueEntryError):
            _validate_balance([line(1), line(2)])


class TestLineInput:
    def test_rejects_sub_cent_amount(self):
        with pytest.raises(ValidationError):
            JournalLineInput(account_id=1, debit_amount=Decimal("10.001"))

    def test_rejects_negative(self):
        with pytest.raises(ValidationError):
            JournalLineInput(account_id=1, credit_amount=Decimal("-1"))

    def test_rejects_both_sides(self):
        with pytest.raises(ValidationError):
            JournalLineInput(account_id=1, debit_amount=Decimal("5"), credit_amount=Decimal("5"))

    def test_mirrored_swaps_sides(self):
        original = line(1, dr="25.50", description="Fee")
        mirror = original.mirrored()
        assert mirror.debit_amount == 0
        assert mirror.credit_amount == Decimal("25.50")
        assert mirror.description == "Reversal: Fee"


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------

class TestSubmit:
    async def test_auto_post_updates_balances(self, ctx, accounts):
        result = await journal_engine.submit(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())

        assert result.ok
        assert result.status == JournalStatus.POSTED
        assert result.entry_number.startswith("JE")
        assert result.total_debit == result.total_credit == Decimal("1000")
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == Decimal("1000")
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.INTEREST_INCOME]) == Decimal("1000")

    async def test_draft_has_no_balance_effect(self, ctx, accounts):
        result = await journal_engine.create_draft(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())

        assert result.ok
        assert result.status == JournalStatus.DRAFT
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == 0

    async def test_unbalanced_is_rejected_without_trace(self, ctx, accounts):
        lines = [
            line(accounts[AccountRole.CASH_BANK], dr="1000"),
            line(accounts[AccountRole.INTEREST_INCOME], cr="900"),
        ]
        result = await journal_engine.submit(ctx, lines, BUSINESS_DATE, meta())

        assert not result.ok
        assert result.error == LedgerErrorKind.UNBALANCED_ENTRY
        assert await journal_engine.list_entries(ctx) == []
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == 0

    async def test_zero_value_rejected(self, ctx, accounts):
        lines = [line(accounts[AccountRole.CASH_BANK]), line(accounts[AccountRole.INTEREST_INCOME])]
        result = await journal_engine.submit(ctx, lines, BUSINESS_DATE, meta())
        assert result.error == LedgerErrorKind.ZERO_VALUE_ENTRY

    async def test_header_account_rejected(self, ctx, accounts):
        header = await coa_service.get_account_by_code(ctx.db, "1000")
        lines = [line(header.id, dr="50"), line(accounts[AccountRole.INTEREST_INCOME], cr="50")]
        result = await journal_engine.submit(ctx, lines, BUSINESS_DATE, meta())

        assert result.error == LedgerErrorKind.INVALID_ACCOUNT
        assert "1000 (header)" in result.details["accounts"]

    async def test_inactive_account_rejected(self, ctx, accounts):
        rent = await coa_service.get_account_by_code(ctx.db, "5400")
        await coa_service.deactivate_account(ctx.db, rent.id)
        lines = [line(rent.id, dr="50"), line(accounts[AccountRole.CASH_BANK], cr="50")]
        result = await journal_engine.submit(ctx, lines, BUSINESS_DATE, meta())
        assert result.error == LedgerErrorKind.INVALID_ACCOUNT

    async def test_unknown_account_rejected(self, ctx, accounts):
        lines = [line(99999, dr="50"), line(accounts[AccountRole.CASH_BANK], cr="50")]
        result = await journal_engine.submit(ctx, lines, BUSINESS_DATE, meta())
        assert result.error == LedgerErrorKind.INVALID_ACCOUNT

    async def test_duplicate_external_reference(self, ctx, accounts):
        first = await journal_engine.submit(
            ctx, _cash_sale(accounts), BUSINESS_DATE, meta(external_reference="BANK-0001")
        )
        second = await journal_engine.submit(
            ctx, _cash_sale(accounts), BUSINESS_DATE, meta(external_reference="BANK-0001")
        )

        assert first.ok
        assert second.error == LedgerErrorKind.DUPLICATE_REFERENCE
        assert second.details["entry_number"] == first.entry_number
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == Decimal("1000")

    async def test_entry_numbers_are_unique(self, ctx, accounts):
        numbers = set()
        for _ in range(3):
            result = await journal_engine.submit(ctx, _cash_sale(accounts, "10"), BUSINESS_DATE, meta())
            numbers.add(result.entry_number)
        assert len(numbers) == 3


class TestApprovalFlow:
    async def test_draft_to_posted(self, ctx, accounts):
        draft = await journal_engine.create_draft(ctx, _cash_sale(accounts), BUSINESS_DATE, meta(created_by=1))
        pending = await journal_engine.submit_for_approval(ctx, draft.entry_id)
        assert pending.status == JournalStatus.PENDING_APPROVAL

        posted = await journal_engine.post(ctx, draft.entry_id, Actor(actor_id=2))
        assert posted.ok
        assert posted.status == JournalStatus.POSTED

        entry = await journal_engine.get_journal_entry(ctx, draft.entry_id)
        assert entry.status == JournalStatus.POSTED
        assert entry.approved_by == 2
        assert entry.posted_at is not None
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == Decimal("1000")

    async def test_creator_cannot_post(self, ctx, accounts):
        draft = await journal_engine.create_draft(ctx, _cash_sale(accounts), BUSINESS_DATE, meta(created_by=7))
        result = await journal_engine.post(ctx, draft.entry_id, Actor(actor_id=7))

        assert result.error == LedgerErrorKind.SEGREGATION_OF_DUTIES
        entry = await journal_engine.get_journal_entry(ctx, draft.entry_id)
        assert entry.status == JournalStatus.DRAFT

    async def test_approval_limit(self, ctx, accounts):
        draft = await journal_engine.create_draft(ctx, _cash_sale(accounts, "500"), BUSINESS_DATE, meta())
        result = await journal_engine.post(
            ctx, draft.entry_id, Actor(actor_id=2, approval_limit=Decimal("100"))
        )

        assert result.error == LedgerErrorKind.APPROVAL_LIMIT_EXCEEDED
        assert result.details["approval_limit"] == Decimal("100")

        ok = await journal_engine.post(ctx, draft.entry_id, Actor(actor_id=3, approval_limit=Decimal("500")))
        assert ok.ok

    async def test_cannot_post_twice(self, ctx, accounts):
        draft = await journal_engine.create_draft(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())
        await journal_engine.post(ctx, draft.entry_id, Actor(actor_id=2))
        again = await journal_engine.post(ctx, draft.entry_id, Actor(actor_id=3))

        assert again.error == LedgerErrorKind.INVALID_STATUS
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == Decimal("1000")

    async def test_submit_for_approval_requires_draft(self, ctx, accounts):
        posted = await journal_engine.submit(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())
        result = await journal_engine.submit_for_approval(ctx, posted.entry_id)
        assert result.error == LedgerErrorKind.INVALID_STATUS

    async def test_post_missing_entry(self, ctx):
        result = await journal_engine.post(ctx, 424242, Actor(actor_id=2))
        assert result.error == LedgerErrorKind.NOT_FOUND


class TestReversal:
    async def test_reversal_restores_balances(self, ctx, accounts):
        original = await journal_engine.submit(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())
        reversal = await journal_engine.reverse(
            ctx, original.entry_id, "Posted to wrong account", actor_id=2, effective_date=BUSINESS_DATE
        )

        assert reversal.ok
        assert reversal.entry_id != original.entry_id
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == 0
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.INTEREST_INCOME]) == 0

        entry = await journal_engine.get_journal_entry(ctx, original.entry_id)
        assert entry.is_reversed
        assert entry.reversal_entry_id == reversal.entry_id
        assert entry.reversal_reason == "Posted to wrong account"

        mirror = await journal_engine.get_journal_entry(ctx, reversal.entry_id)
        assert mirror.entry_type == JournalEntryType.REVERSAL
        assert mirror.reverses_entry_id == original.entry_id
        assert [(ln.debit_amount, ln.credit_amount) for ln in mirror.lines] == [
            (Decimal("0"), Decimal("1000")),
            (Decimal("1000"), Decimal("0")),
        ]

    async def test_cannot_reverse_twice(self, ctx, accounts):
        original = await journal_engine.submit(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())
        await journal_engine.reverse(ctx, original.entry_id, "first", actor_id=2, effective_date=BUSINESS_DATE)
        again = await journal_engine.reverse(
            ctx, original.entry_id, "second", actor_id=2, effective_date=BUSINESS_DATE
        )
        assert again.error == LedgerErrorKind.ALREADY_REVERSED
        assert len(await journal_engine.list_entries(ctx)) == 2

    async def test_reversal_cannot_be_reversed(self, ctx, accounts):
        original = await journal_engine.submit(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())
        reversal = await journal_engine.reverse(
            ctx, original.entry_id, "oops", actor_id=2, effective_date=BUSINESS_DATE
        )
        result = await journal_engine.reverse(
            ctx, reversal.entry_id, "undo", actor_id=2, effective_date=BUSINESS_DATE
        )
        assert result.error == LedgerErrorKind.REVERSAL_NOT_REVERSIBLE

    async def test_draft_cannot_be_reversed(self, ctx, accounts):
        draft = await journal_engine.create_draft(ctx, _cash_sale(accounts), BUSINESS_DATE, meta())
        result = await journal_engine.reverse(ctx, draft.entry_id, "n/a", actor_id=2)
        assert result.error == LedgerErrorKind.NOT_POSTED


class TestRaiseForError:
    async def test_failed_result_reraises_typed_error(self, ctx, accounts):
        lines = [line(accounts[AccountRole.CASH_BANK], dr="1")]
        result = await journal_engine.submit(ctx, lines, BUSINESS_DATE, meta())
        with pytest.raises(UnbalancedEntryError):
            result.raise_for_error()


class TestTransactionBounds:
    async def test_slow_unit_times_out_and_rolls_back(self, ctx, accounts, monkeypatch):
        bounded = LedgerContext(ctx.db, ctx.accounts, Settings(ledger_tx_timeout_seconds=0.2))
        apply_deltas = journal_engine._apply_balance_deltas

        async def stalled(db, lines, sides):
            deltas = await apply_deltas(db, lines, sides)
            await asyncio.sleep(5)
            return deltas

        monkeypatch.setattr(journal_engine, "_apply_balance_deltas", stalled)
        result = await journal_engine.submit(bounded, _cash_sale(accounts), BUSINESS_DATE, meta())

        assert result.error == LedgerErrorKind.TRANSACTION_TIMEOUT
        assert result.details["timeout_seconds"] == 0.2
        assert await journal_engine.list_entries(ctx) == []
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.CASH_BANK]) == 0
        assert await reports_service.get_cached_balance(ctx, accounts[AccountRole.INTEREST_INCOME]) == 0

"""Savings and fixed-deposit workflows against a seeded ledger.

Tests cover:
- Savings deposits and withdrawals, balance floor and minimum balance
- Monthly savings interest, at most once per month
- Fixed deposit booking, daily accrual capped at maturity
- Maturity payout and rollover
- Premature withdrawal penalty, floored at zero net interest
- Interest payable returns to zero once a deposit is settled
- Rate card lookup by amount and tenure
"""

from datetime import date
from decimal import Decimal

from lendledger.models.deposit import FixedDepositRate, FixedDepositStatus, MaturityInstruction
from lendledger.services import fixed_deposit_service, savings_service
from lendledger.services.gl import journal_engine, reports_service
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.errors import LedgerErrorKind
from tests.conftest import BUSINESS_DATE

TELLER = 3


async def _balance(ctx, accounts, role):
    return await reports_service.get_cached_balance(ctx, accounts[role])


# ---------------------------------------------------------------------------
# Savings
# ---------------------------------------------------------------------------

class TestSavings:
    async def _open(self, ctx, **kwargs):
        kwargs.setdefault("initial_deposit", Decimal("5000"))
        result = await savings_service.open_savings_account(
            ctx, customer_id=77, created_by=TELLER, opened_on=BUSINESS_DATE, **kwargs
        )
        assert result.ok, result.message
        return result

    async def test_open_with_initial_deposit(self, ctx, accounts):
        opened = await self._open(ctx)

        assert opened.account_number.startswith("SA")
        assert opened.transaction_reference.startswith("ST")
        assert opened.balance == Decimal("5000")
        assert await _balance(ctx, accounts, AccountRole.SAVINGS_LIABILITY) == Decimal("5000")
        assert await _balance(ctx, accounts, AccountRole.CASH_BANK) == Decimal("5000")

    async def test_open_without_deposit_posts_nothing(self, ctx):
        opened = await self._open(ctx, initial_deposit=None)
        assert opened.balance == 0
        assert opened.journal_entry_id is None
        assert await journal_engine.list_entries(ctx) == []

    async def test_deposit_and_withdrawal(self, ctx, accounts):
        opened = await self._open(ctx)
        deposit = await savings_service.process_deposit(
            ctx, opened.account_id, Decimal("250.50"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )
        assert deposit.balance == Decimal("5250.50")

        withdrawal = await savings_service.process_withdrawal(
            ctx, opened.account_id, Decimal("5250.50"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )
        assert withdrawal.ok
        assert withdrawal.balance == 0

        account = await savings_service.get_savings_account(ctx, opened.account_id)
        assert account.balance == 0
        assert account.last_transaction_at is not None
        assert await _balance(ctx, accounts, AccountRole.SAVINGS_LIABILITY) == 0

    async def test_withdrawal_over_balance(self, ctx, accounts):
        opened = await self._open(ctx)
        result = await savings_service.process_withdrawal(
            ctx, opened.account_id, Decimal("5000.01"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )

        assert result.error == LedgerErrorKind.INSUFFICIENT_BALANCE
        assert result.details["available"] == Decimal("5000")
        assert await _balance(ctx, accounts, AccountRole.SAVINGS_LIABILITY) == Decimal("5000")

    async def test_minimum_balance(self, ctx):
        opened = await self._open(ctx, minimum_balance=Decimal("1000"))
        breach = await savings_service.process_withdrawal(
            ctx, opened.account_id, Decimal("4500"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )
        assert breach.error == LedgerErrorKind.INSUFFICIENT_BALANCE
        assert breach.details["minimum_balance"] == Decimal("1000")

        allowed = await savings_service.process_withdrawal(
            ctx, opened.account_id, Decimal("4000"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )
        assert allowed.balance == Decimal("1000")

    async def test_withdrawals_disabled(self, ctx):
        opened = await self._open(ctx, allow_withdrawal=False)
        result = await savings_service.process_withdrawal(
            ctx, opened.account_id, Decimal("10"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )
        assert result.error == LedgerErrorKind.INVALID_STATUS

    async def test_invalid_amount_and_missing_account(self, ctx):
        opened = await self._open(ctx)
        zero = await savings_service.process_deposit(ctx, opened.account_id, Decimal("0"), processed_by=TELLER)
        assert zero.error == LedgerErrorKind.INVALID_AMOUNT

        missing = await savings_service.process_deposit(
            ctx, 4040, Decimal("10"), processed_by=TELLER, transaction_date=BUSINESS_DATE
        )
        assert missing.error == LedgerErrorKind.NOT_FOUND


class TestSavingsInterest:
    async def _open(self, ctx, balance="100000", rate="6", opened_on=date(2025, 1, 15)):
        result = await savings_service.open_savings_account(
            ctx, customer_id=78, created_by=TELLER, opened_on=opened_on,
            initial_deposit=Decimal(balance), interest_rate=Decimal(rate),
        )
        assert result.ok, result.message
        return result.account_id

    async def test_credits_last_months_interest(self, ctx, accounts):
        account_id = await self._open(ctx)

        credited = await savings_service.credit_interest(ctx, account_id, as_of=date(2025, 2, 1))

        assert credited.amount == Decimal("500")
        assert credited.balance == Decimal("100500")
        assert await _balance(ctx, accounts, AccountRole.SAVINGS_LIABILITY) == Decimal("100500")
        assert await _balance(ctx, accounts, AccountRole.INTEREST_EXPENSE) == Decimal("500")
        account = await savings_service.get_savings_account(ctx, account_id)
        assert account.balance == Decimal("100500")
        assert account.last_interest_date == date(2025, 2, 1)
        entry = await journal_engine.get_journal_entry(ctx, credited.journal_entry_id)
        assert entry.savings_account_id == account_id
        assert entry.entry_date == date(2025, 2, 1)

    async def test_once_per_month(self, ctx):
        account_id = await self._open(ctx)
        await savings_service.credit_interest(ctx, account_id, as_of=date(2025, 2, 1))

        again = await savings_service.credit_interest(ctx, account_id, as_of=date(2025, 2, 20))
        assert again.ok
        assert again.amount == 0
        assert len(await journal_engine.list_entries(ctx)) == 2

        march = await savings_service.credit_interest(ctx, account_id, as_of=date(2025, 3, 1))
        assert march.amount == Decimal("502.50")

    async def test_account_opened_this_month_waits(self, ctx):
        account_id = await self._open(ctx, opened_on=date(2025, 2, 10))
        result = await savings_service.credit_interest(ctx, account_id, as_of=date(2025, 2, 28))

        assert result.amount == 0
        account = await savings_service.get_savings_account(ctx, account_id)
        assert account.last_interest_date is None

    def test_monthly_interest_rounds_to_cent(self):
        assert savings_service.monthly_interest(Decimal("123456.78"), Decimal("3")) == Decimal("308.64")
        assert savings_service.monthly_interest(Decimal("0"), Decimal("6")) == 0

    async def test_negative_rate_rejected(self, ctx):
        result = await savings_service.open_savings_account(
            ctx, customer_id=78, created_by=TELLER, opened_on=BUSINESS_DATE, interest_rate=Decimal("-1")
        )
        assert result.error == LedgerErrorKind.INVALID_AMOUNT


# ---------------------------------------------------------------------------
# Fixed deposits
# ---------------------------------------------------------------------------

async def _book(ctx, principal, rate, days, start=date(2025, 1, 1), **kwargs):
    result = await fixed_deposit_service.create_fixed_deposit(
        ctx,
        customer_id=88,
        principal_amount=Decimal(principal),
        interest_rate=Decimal(rate),
        tenure_days=days,
        created_by=TELLER,
        start_date=start,
        **kwargs,
    )
    assert result.ok, result.message
    return result


class TestFixedDepositBooking:
    async def test_booking_posts_liability(self, ctx, accounts):
        booked = await _book(ctx, "1000000", "10", 365)

        assert booked.certificate_number.startswith("FD")
        assert booked.interest == Decimal("100000")
        assert booked.maturity_date == date(2026, 1, 1)
        assert await _balance(ctx, accounts, AccountRole.FD_LIABILITY) == Decimal("1000000")

    async def test_invalid_tenure(self, ctx):
        result = await fixed_deposit_service.create_fixed_deposit(
            ctx, customer_id=88, principal_amount=Decimal("1000"), interest_rate=Decimal("5"),
            tenure_days=0, created_by=TELLER, start_date=date(2025, 1, 1),
        )
        assert result.error == LedgerErrorKind.INVALID_AMOUNT
        assert await journal_engine.list_entries(ctx) == []


class TestAccrual:
    async def test_thirty_days(self, ctx, accounts):
        booked = await _book(ctx, "1000000", "10", 365)
        result = await fixed_deposit_service.accrue_interest_for_deposit(
            ctx, booked.deposit_id, as_of=date(2025, 1, 31)
        )

        assert result.interest == Decimal("8219.18")
        assert await _balance(ctx, accounts, AccountRole.INTEREST_PAYABLE) == Decimal("8219.18")
        assert await _balance(ctx, accounts, AccountRole.INTEREST_EXPENSE) == Decimal("8219.18")

        fd = await fixed_deposit_service.get_fixed_deposit(ctx, booked.deposit_id)
        assert fd.last_accrual_date == date(2025, 1, 31)

    async def test_same_day_rerun_accrues_nothing(self, ctx):
        booked = await _book(ctx, "1000000", "10", 365)
        await fixed_deposit_service.accrue_interest_for_deposit(ctx, booked.deposit_id, as_of=date(2025, 1, 31))
        again = await fixed_deposit_service.accrue_interest_for_deposit(
            ctx, booked.deposit_id, as_of=date(2025, 1, 31)
        )
        assert again.ok
        assert again.interest == 0
        assert again.journal_entry_id is None

    async def test_capped_at_contracted_interest(self, ctx, accounts):
        booked = await _book(ctx, "500000", "12", 90)
        first = await fixed_deposit_service.accrue_interest_for_deposit(
            ctx, booked.deposit_id, as_of=date(2025, 1, 31)
        )
        rest = await fixed_deposit_service.accrue_interest_for_deposit(
            ctx, booked.deposit_id, as_of=date(2025, 4, 30)
        )

        assert first.interest == Decimal("4931.51")
        assert rest.interest == Decimal("9863.01")
        assert await _balance(ctx, accounts, AccountRole.INTEREST_PAYABLE) == Decimal("14794.52")
        fd = await fixed_deposit_service.get_fixed_deposit(ctx, booked.deposit_id)
        assert fd.last_accrual_date == date(2025, 4, 1)


class TestMaturity:
    async def test_payout_releases_accrual(self, ctx, accounts):
        booked = await _book(ctx, "500000", "12", 90)
        await fixed_deposit_service.accrue_interest_for_deposit(ctx, booked.deposit_id, as_of=date(2025, 1, 31))

        result = await fixed_deposit_service.mature_deposit(ctx, booked.deposit_id, as_of=date(2025, 4, 1))

        assert result.status == FixedDepositStatus.MATURED
        assert result.amount == Decimal("514794.52")
        assert await _balance(ctx, accounts, AccountRole.INTEREST_PAYABLE) == 0
        assert await _balance(ctx, accounts, AccountRole.INTEREST_EXPENSE) == Decimal("14794.52")
        assert await _balance(ctx, accounts, AccountRole.FD_LIABILITY) == 0
        assert await _balance(ctx, accounts, AccountRole.CASH_BANK) == Decimal("-14794.52")

        fd = await fixed_deposit_service.get_fixed_deposit(ctx, booked.deposit_id)
        assert fd.amount_paid == Decimal("514794.52")
        assert fd.accrued_interest == 0

    async def test_not_yet_matured(self, ctx):
        booked = await _book(ctx, "500000", "12", 90)
        result = await fixed_deposit_service.mature_deposit(ctx, booked.deposit_id, as_of=date(2025, 3, 31))
        assert result.error == LedgerErrorKind.INVALID_STATUS

    async def test_rollover_capitalises_interest(self, ctx, accounts):
        booked = await _book(
            ctx, "1000000", "10", 365,
            maturity_instruction=MaturityInstruction.ROLLOVER_PRINCIPAL_AND_INTEREST,
        )
        result = await fixed_deposit_service.mature_deposit(ctx, booked.deposit_id, as_of=date(2026, 1, 1))

        assert result.status == FixedDepositStatus.ROLLED_OVER
        assert await _balance(ctx, accounts, AccountRole.FD_LIABILITY) == Decimal("1100000")
        assert await _balance(ctx, accounts, AccountRole.CASH_BANK) == Decimal("1000000")

        successor = await fixed_deposit_service.get_fixed_deposit(ctx, result.rolled_over_to_id)
        assert successor.status == FixedDepositStatus.ACTIVE
        assert successor.principal_amount == Decimal("1100000")
        assert successor.start_date == date(2026, 1, 1)
        assert successor.maturity_date == date(2027, 1, 1)
        assert successor.interest_amount == Decimal("110000")
        assert successor.rolled_over_from_id == booked.deposit_id

    async def test_cannot_mature_twice(self, ctx):
        booked = await _book(ctx, "500000", "12", 90)
        await fixed_deposit_service.mature_deposit(ctx, booked.deposit_id, as_of=date(2025, 4, 1))
        again = await fixed_deposit_service.mature_deposit(ctx, booked.deposit_id, as_of=date(2025, 4, 2))
        assert again.error == LedgerErrorKind.INVALID_STATUS


class TestPrematureWithdrawal:
    def test_settlement_math(self):
        assert fixed_deposit_service.premature_settlement(Decimal("500000"), Decimal("12"), 45, Decimal("2")) == (
            Decimal("7397.26"), Decimal("10000.00"), Decimal("0"),
        )
        assert fixed_deposit_service.premature_settlement(Decimal("1000000"), Decimal("10"), 300, Decimal("2")) == (
            Decimal("82191.78"), Decimal("20000.00"), Decimal("62191.78"),
        )

    async def test_penalty_exceeds_interest(self, ctx, accounts):
        booked = await _book(ctx, "500000", "12", 90)
        result = await fixed_deposit_service.process_premature_withdrawal(
            ctx, booked.deposit_id, processed_by=TELLER, withdrawal_date=date(2025, 2, 15), reason="Emergency"
        )

        assert result.status == FixedDepositStatus.PREMATURE_CLOSED
        assert result.penalty == Decimal("10000")
        assert result.interest == 0
        assert result.amount == Decimal("500000")
        assert await _balance(ctx, accounts, AccountRole.CASH_BANK) == 0

    async def test_reverses_over_accrual(self, ctx, accounts):
        booked = await _book(ctx, "1000000", "10", 365)
        await fixed_deposit_service.accrue_interest_for_deposit(ctx, booked.deposit_id, as_of=date(2025, 1, 31))

        result = await fixed_deposit_service.process_premature_withdrawal(
            ctx, booked.deposit_id, processed_by=TELLER, withdrawal_date=date(2025, 10, 28)
        )

        assert result.amount == Decimal("1062191.78")
        assert await _balance(ctx, accounts, AccountRole.INTEREST_PAYABLE) == 0
        assert await _balance(ctx, accounts, AccountRole.INTEREST_EXPENSE) == Decimal("62191.78")
        fd = await fixed_deposit_service.get_fixed_deposit(ctx, booked.deposit_id)
        assert fd.penalty_amount == Decimal("20000")
        assert fd.termination_reason is None

    async def test_rejected_at_maturity(self, ctx):
        booked = await _book(ctx, "500000", "12", 90)
        result = await fixed_deposit_service.process_premature_withdrawal(
            ctx, booked.deposit_id, processed_by=TELLER, withdrawal_date=date(2025, 4, 1)
        )
        assert result.error == LedgerErrorKind.INVALID_STATUS

    async def test_ledger_reconciles(self, ctx):
        booked = await _book(ctx, "250000", "9", 180)
        await fixed_deposit_service.accrue_interest_for_deposit(ctx, booked.deposit_id, as_of=date(2025, 2, 1))
        await fixed_deposit_service.process_premature_withdrawal(
            ctx, booked.deposit_id, processed_by=TELLER, withdrawal_date=date(2025, 3, 1)
        )
        assert await reports_service.reconcile_balances(ctx) == []
        assert (await reports_service.generate_trial_balance(ctx)).is_balanced


class TestRateCard:
    async def _book_from_card(self, ctx, principal, days, start=date(2025, 1, 1)):
        return await fixed_deposit_service.create_fixed_deposit(
            ctx, customer_id=89, principal_amount=Decimal(principal),
            tenure_days=days, created_by=TELLER, start_date=start,
        )

    async def test_rate_by_tenure(self, ctx):
        short = await self._book_from_card(ctx, "100000", 60)
        medium = await self._book_from_card(ctx, "100000", 120)
        long = await self._book_from_card(ctx, "100000", 730)

        assert [short.interest_rate, medium.interest_rate, long.interest_rate] == [
            Decimal("8"), Decimal("10"), Decimal("14"),
        ]
        fd = await fixed_deposit_service.get_fixed_deposit(ctx, medium.deposit_id)
        assert fd.interest_rate == Decimal("10")

    async def test_best_matching_tier_wins(self, ctx, db):
        db.add(
            FixedDepositRate(
                min_tenure_days=91, max_tenure_days=180, min_amount=Decimal("1000000"),
                interest_rate=Decimal("11"), is_active=True, effective_from=date(2024, 1, 1),
            )
        )
        await db.commit()

        large = await self._book_from_card(ctx, "2000000", 120)
        small = await self._book_from_card(ctx, "100000", 120)
        assert (large.interest_rate, small.interest_rate) == (Decimal("11"), Decimal("10"))

    async def test_expired_and_inactive_tiers_ignored(self, ctx, db):
        db.add_all([
            FixedDepositRate(
                min_tenure_days=30, max_tenure_days=90, min_amount=Decimal("50000"),
                interest_rate=Decimal("20"), is_active=True,
                effective_from=date(2024, 1, 1), effective_to=date(2024, 12, 31),
            ),
            FixedDepositRate(
                min_tenure_days=30, max_tenure_days=90, min_amount=Decimal("50000"),
                interest_rate=Decimal("18"), is_active=False, effective_from=date(2024, 1, 1),
            ),
        ])
        await db.commit()

        booked = await self._book_from_card(ctx, "100000", 60)
        assert booked.interest_rate == Decimal("8")

    async def test_no_tier_rejects_booking(self, ctx):
        below_minimum = await self._book_from_card(ctx, "10000", 60)
        too_long = await self._book_from_card(ctx, "100000", 800)

        assert below_minimum.error == LedgerErrorKind.INVALID_AMOUNT
        assert too_long.details["tenure_days"] == 800
        assert await journal_engine.list_entries(ctx) == []

    async def test_explicit_rate_overrides_card(self, ctx):
        booked = await _book(ctx, "10000", "7.5", 60)
        assert booked.interest_rate == Decimal("7.5")

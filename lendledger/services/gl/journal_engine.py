"""Core double-entry journal engine.

All monetary movements flow through this engine, and it is the only writer
of ``Account.current_balance``.  The fundamental invariant is
**total debits == total credits** (and non-zero) for every journal entry,
enforced at three layers:

1. Input models (``JournalLineInput``): non-negative, cent-precision, one side
2. Application-level validation before persist
3. Database CHECK constraints on lines and entry totals

Entries move DRAFT → PENDING_APPROVAL → POSTED.  ``submit`` with
``auto_post`` is the composition of create-draft and post inside one atomic
unit.  Posted entries are immutable; corrections are made exclusively via
reversing entries.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from lendledger.models.gl import (
    Account,
    BalanceSide,
    JournalEntry,
    JournalEntryLine,
    JournalEntryType,
    JournalStatus,
    SourceModule,
)
from lendledger.money import CENT, ZERO
from lendledger.services.gl.context import Actor, LedgerContext
from lendledger.services.gl.errors import (
    AlreadyReversedError,
    ApprovalLimitError,
    DuplicateReferenceError,
    InvalidAccountError,
    LedgerError,
    LedgerResult,
    NotFoundError,
    NotPostedError,
    ReversalNotReversibleError,
    SegregationOfDutiesError,
    StatusTransitionError,
    UnbalancedEntryError,
    ZeroValueEntryError,
)
from lendledger.services.gl.period_service import ensure_period_open
from lendledger.services.sequence import ReferenceKind, generate_reference

logger = logging.getLogger(__name__)

_POSTABLE_STATUSES = (JournalStatus.DRAFT, JournalStatus.PENDING_APPROVAL)


# ---------------------------------------------------------------------------
# Inputs and results
# ---------------------------------------------------------------------------

class JournalLineInput(BaseModel):
    """One debit or credit line as submitted by a workflow service."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    debit_amount: Decimal = ZERO
    credit_amount: Decimal = ZERO
    description: str | None = None
    customer_id: int | None = None
    reference_type: str | None = None
    reference_id: int | None = None

    @field_validator("debit_amount", "credit_amount")
    @classmethod
    def _cent_amount(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("amounts must not be negative")
        if v != v.quantize(CENT):
            raise ValueError("amounts must have at most 2 decimal places")
        return v.quantize(CENT)

    @model_validator(mode="after")
    def _one_side(self) -> "JournalLineInput":
        if self.debit_amount > 0 and self.credit_amount > 0:
            raise ValueError("a line carries either a debit or a credit, not both")
        return self

    def mirrored(self) -> "JournalLineInput":
        return self.model_copy(
            update={
                "debit_amount": self.credit_amount,
                "credit_amount": self.debit_amount,
                "description": f"Reversal: {self.description or ''}".strip(),
            }
        )


class EntryMetadata(BaseModel):
    """Header fields describing where an entry came from."""

    description: str
    narration: str | None = None
    entry_type: JournalEntryType = JournalEntryType.STANDARD
    source_module: SourceModule = SourceModule.MANUAL
    source_type: str | None = None
    source_id: int | None = None
    loan_id: int | None = None
    savings_account_id: int | None = None
    fixed_deposit_id: int | None = None
    external_reference: str | None = None
    value_date: date | None = None
    created_by: int | None = None


@dataclass(kw_only=True)
class PostingResult(LedgerResult):
    entry_id: int | None = None
    entry_number: str | None = None
    status: JournalStatus | None = None
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO


def _result_for(entry: JournalEntry, status: JournalStatus) -> PostingResult:
    return PostingResult(
        entry_id=entry.id,
        entry_number=entry.entry_number,
        status=status,
        total_debit=entry.total_debit,
        total_credit=entry.total_credit,
    )


def signed_amount(side: BalanceSide, debit: Decimal, credit: Decimal) -> Decimal:
    """Balance effect of a debit/credit pair on an account with normal *side*."""
    if side == BalanceSide.DEBIT:
        return debit - credit
    return credit - debit


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _validate_balance(lines: list[JournalLineInput]) -> tuple[Decimal, Decimal]:
    """Ensure total debits == total credits and non-zero.  Returns (total_dr, total_cr)."""
    total_dr = sum((ln.debit_amount for ln in lines), ZERO)
    total_cr = sum((ln.credit_amount for ln in lines), ZERO)
    if total_dr != total_cr:
        raise UnbalancedEntryError(
            f"Entry is not balanced: debits={total_dr}, credits={total_cr}",
            total_debit=total_dr,
            total_credit=total_cr,
        )
    if total_dr == 0:
        raise ZeroValueEntryError(
            "Entry has zero total; at least one non-zero line required",
            total_debit=total_dr,
            total_credit=total_cr,
        )
    return total_dr, total_cr


async def _validate_accounts(
    db: AsyncSession, account_ids: list[int]
) -> dict[int, BalanceSide]:
    """Check every account exists, is active and is not a header.

    Returns the normal-balance side per account id.
    """
    wanted = set(account_ids)
    result = await db.execute(
        select(Account)
        .where(Account.id.in_(sorted(wanted)))
        .execution_options(populate_existing=True)
    )
    rows = {acct.id: acct for acct in result.scalars().all()}

    offending: list[str] = []
    for aid in sorted(wanted):
        acct = rows.get(aid)
        if acct is None:
            offending.append(f"#{aid} (not found)")
        elif not acct.is_postable:
            why = "header" if acct.is_header else "inactive"
            offending.append(f"{acct.account_code} ({why})")
    if offending:
        raise InvalidAccountError(
            f"Accounts cannot be posted to: {', '.join(offending)}",
            accounts=offending,
        )
    return {aid: rows[aid].normal_balance for aid in wanted}


async def _apply_balance_deltas(
    db: AsyncSession,
    lines: list[JournalLineInput],
    sides: dict[int, BalanceSide],
) -> dict[int, Decimal]:
    """Increment each touched account's cached balance by its signed net.

    Each increment is a single ``SET current_balance = current_balance + :d``
    so concurrent postings serialize on the row instead of overwriting each
    other.  Accounts are updated in id order to keep lock order stable.
    """
    deltas: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for ln in lines:
        deltas[ln.account_id] += signed_amount(
            sides[ln.account_id], ln.debit_amount, ln.credit_amount
        )

    for account_id in sorted(deltas):
        delta = deltas[account_id]
        if delta == 0:
            continue
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(current_balance=Account.current_balance + delta)
            .execution_options(synchronize_session=False)
        )
    return dict(deltas)


# ---------------------------------------------------------------------------
# Unit steps (run inside an open ctx.transaction())
# ---------------------------------------------------------------------------

async def _create_draft(
    ctx: LedgerContext,
    lines: list[JournalLineInput],
    entry_date: date,
    metadata: EntryMetadata,
    *,
    reverses_entry_id: int | None = None,
) -> JournalEntry:
    db = ctx.db

    # 1. Period  2. Balance  3. Zero value  4. Accounts
    await ensure_period_open(db, entry_date)
    total_dr, total_cr = _validate_balance(lines)
    await _validate_accounts(db, [ln.account_id for ln in lines])

    if metadata.external_reference:
        await ensure_reference_unused(db, metadata.external_reference)

    entry = JournalEntry(
        entry_number=await generate_reference(db, ReferenceKind.JOURNAL),
        external_reference=metadata.external_reference,
        entry_date=entry_date,
        value_date=metadata.value_date or entry_date,
        entry_type=metadata.entry_type,
        status=JournalStatus.DRAFT,
        total_debit=total_dr,
        total_credit=total_cr,
        description=metadata.description,
        narration=metadata.narration,
        source_module=metadata.source_module,
        source_type=metadata.source_type,
        source_id=metadata.source_id,
        loan_id=metadata.loan_id,
        savings_account_id=metadata.savings_account_id,
        fixed_deposit_id=metadata.fixed_deposit_id,
        created_by=metadata.created_by,
        reverses_entry_id=reverses_entry_id,
    )
    for idx, ln in enumerate(lines, start=1):
        entry.lines.append(
            JournalEntryLine(
                line_number=idx,
                account_id=ln.account_id,
                debit_amount=ln.debit_amount,
                credit_amount=ln.credit_amount,
                description=ln.description,
                customer_id=ln.customer_id,
                reference_type=ln.reference_type,
                reference_id=ln.reference_id,
            )
        )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise DuplicateReferenceError(
            f"Entry {entry.entry_number} conflicts with an existing reference",
            external_reference=metadata.external_reference,
        ) from exc
    return entry


async def ensure_reference_unused(db: AsyncSession, external_reference: str) -> None:
    """Raise ``DuplicateReferenceError`` if an entry already carries the reference."""
    existing = await db.execute(
        select(JournalEntry.entry_number).where(
            JournalEntry.external_reference == external_reference
        )
    )
    duplicate_of = existing.scalar_one_or_none()
    if duplicate_of is not None:
        raise DuplicateReferenceError(
            f"Reference {external_reference} already recorded as {duplicate_of}",
            external_reference=external_reference,
            entry_number=duplicate_of,
        )


async def _post_in_unit(
    ctx: LedgerContext,
    entry: JournalEntry,
    lines: list[JournalLineInput],
    *,
    approver_id: int | None,
    period_checked: bool = False,
) -> None:
    """DRAFT/PENDING_APPROVAL → POSTED plus balance deltas, in the caller's unit."""
    db = ctx.db
    if not period_checked:
        await ensure_period_open(db, entry.entry_date)
    sides = await _validate_accounts(db, [ln.account_id for ln in lines])

    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(JournalEntry)
        .where(
            JournalEntry.id == entry.id,
            JournalEntry.status.in_(_POSTABLE_STATUSES),
        )
        .values(
            status=JournalStatus.POSTED,
            approved_by=approver_id,
            approved_at=now,
            posted_at=now,
        )
    )
    if result.rowcount != 1:
        raise StatusTransitionError(
            f"Cannot post {entry.entry_number}: no longer awaiting posting",
            entry_number=entry.entry_number,
        )
    await _apply_balance_deltas(db, lines, sides)


async def _load_entry(
    db: AsyncSession, entry_id: int, *, for_update: bool = False
) -> JournalEntry | None:
    q = (
        select(JournalEntry)
        .where(JournalEntry.id == entry_id)
        .options(selectinload(JournalEntry.lines))
        .execution_options(populate_existing=True)
    )
    if for_update:
        q = q.with_for_update()
    result = await db.execute(q)
    return result.scalar_one_or_none()


def _lines_of(entry: JournalEntry) -> list[JournalLineInput]:
    return [
        JournalLineInput(
            account_id=ln.account_id,
            debit_amount=ln.debit_amount,
            credit_amount=ln.credit_amount,
            description=ln.description,
            customer_id=ln.customer_id,
            reference_type=ln.reference_type,
            reference_id=ln.reference_id,
        )
        for ln in entry.lines
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def create_draft(
    ctx: LedgerContext,
    lines: list[JournalLineInput],
    entry_date: date,
    metadata: EntryMetadata,
) -> PostingResult:
    """Validate and persist an entry as DRAFT.  No balance effect."""
    return await submit(ctx, lines, entry_date, metadata, auto_post=False)


async def submit(
    ctx: LedgerContext,
    lines: list[JournalLineInput],
    entry_date: date,
    metadata: EntryMetadata,
    *,
    auto_post: bool = True,
) -> PostingResult:
    """Create an entry and, with ``auto_post``, post it in the same atomic unit.

    Validation order: period not hard-closed, debits == credits, non-zero
    total, every account active and non-header.

    When ``ctx.db`` already has a transaction open (any earlier read begins
    one) the unit runs as a SAVEPOINT inside it: an ``ok`` result is then
    staged, not durable, until the caller commits.
    """
    try:
        async with ctx.transaction():
            entry = await _create_draft(ctx, lines, entry_date, metadata)
            status = JournalStatus.DRAFT
            if auto_post:
                await _post_in_unit(
                    ctx, entry, lines, approver_id=metadata.created_by, period_checked=True
                )
                status = JournalStatus.POSTED
            outcome = _result_for(entry, status)
    except LedgerError as exc:
        logger.warning("Journal entry rejected (%s): %s", exc.kind.value, exc.message)
        return PostingResult.failed(exc)

    logger.info(
        "Created journal entry %s (status=%s, amount=%s)",
        outcome.entry_number,
        outcome.status.value,
        outcome.total_debit,
    )
    return outcome


async def submit_for_approval(ctx: LedgerContext, entry_id: int) -> PostingResult:
    """Transition DRAFT → PENDING_APPROVAL."""
    try:
        async with ctx.transaction() as db:
            entry = await _load_entry(db, entry_id, for_update=True)
            if entry is None:
                raise NotFoundError(f"Journal entry {entry_id} not found", entry_id=entry_id)
            if entry.status != JournalStatus.DRAFT:
                raise StatusTransitionError(
                    f"Cannot submit: entry is {entry.status.value}, expected draft",
                    status=entry.status.value,
                )
            entry.status = JournalStatus.PENDING_APPROVAL
            await db.flush()
            outcome = _result_for(entry, JournalStatus.PENDING_APPROVAL)
    except LedgerError as exc:
        return PostingResult.failed(exc)

    logger.info("Submitted %s for approval", outcome.entry_number)
    return outcome


async def post(ctx: LedgerContext, entry_id: int, approver: Actor) -> PostingResult:
    """Transition DRAFT/PENDING_APPROVAL → POSTED and apply balance deltas.

    The period is re-checked as of now, not as of draft creation.  The
    approver must not be the creator and the entry must fit within the
    approver's limit.

    As with ``submit``, the result is durable only once the outermost
    transaction on ``ctx.db`` commits.
    """
    try:
        async with ctx.transaction() as db:
            entry = await _load_entry(db, entry_id, for_update=True)
            if entry is None:
                raise NotFoundError(f"Journal entry {entry_id} not found", entry_id=entry_id)
            if entry.status not in _POSTABLE_STATUSES:
                raise StatusTransitionError(
                    f"Cannot post: entry is {entry.status.value}",
                    status=entry.status.value,
                )
            if entry.created_by is not None and entry.created_by == approver.actor_id:
                raise SegregationOfDutiesError(
                    f"User {approver.actor_id} created {entry.entry_number} and cannot post it",
                    actor_id=approver.actor_id,
                )
            if approver.approval_limit is not None and entry.total_debit > approver.approval_limit:
                raise ApprovalLimitError(
                    f"Entry amount {entry.total_debit} exceeds approval limit "
                    f"{approver.approval_limit}",
                    amount=entry.total_debit,
                    approval_limit=approver.approval_limit,
                )
            await _post_in_unit(ctx, entry, _lines_of(entry), approver_id=approver.actor_id)
            outcome = _result_for(entry, JournalStatus.POSTED)
    except LedgerError as exc:
        logger.warning("Posting of entry %s rejected: %s", entry_id, exc.message)
        return PostingResult.failed(exc)

    logger.info("Posted %s by user %d", outcome.entry_number, approver.actor_id)
    return outcome


async def reverse(
    ctx: LedgerContext,
    entry_id: int,
    reason: str,
    actor_id: int,
    effective_date: date | None = None,
) -> PostingResult:
    """Reverse a posted entry with an auto-posted mirror entry.

    Both entries are linked; the original is flagged reversed exactly once.
    Reversal entries themselves cannot be reversed.
    """
    try:
        async with ctx.transaction() as db:
            original = await _load_entry(db, entry_id, for_update=True)
            if original is None:
                raise NotFoundError(f"Journal entry {entry_id} not found", entry_id=entry_id)
            if original.status != JournalStatus.POSTED:
                raise NotPostedError(
                    f"Cannot reverse: entry is {original.status.value}, expected posted",
                    status=original.status.value,
                )
            if original.is_reversed:
                raise AlreadyReversedError(
                    f"Entry {original.entry_number} has already been reversed",
                    reversal_entry_id=original.reversal_entry_id,
                )
            if original.entry_type == JournalEntryType.REVERSAL:
                raise ReversalNotReversibleError(
                    f"Entry {original.entry_number} is a reversal and cannot be reversed",
                    reverses_entry_id=original.reverses_entry_id,
                )

            mirror = [ln.mirrored() for ln in _lines_of(original)]
            metadata = EntryMetadata(
                description=f"Reversal of {original.entry_number}: {reason}",
                narration=reason,
                entry_type=JournalEntryType.REVERSAL,
                source_module=original.source_module,
                source_type=original.source_type,
                source_id=original.source_id,
                loan_id=original.loan_id,
                savings_account_id=original.savings_account_id,
                fixed_deposit_id=original.fixed_deposit_id,
                created_by=actor_id,
            )
            reversal = await _create_draft(
                ctx,
                mirror,
                effective_date or date.today(),
                metadata,
                reverses_entry_id=original.id,
            )
            await _post_in_unit(ctx, reversal, mirror, approver_id=actor_id, period_checked=True)

            marked = await db.execute(
                update(JournalEntry)
                .where(
                    JournalEntry.id == original.id,
                    JournalEntry.is_reversed.is_(False),
                )
                .values(
                    is_reversed=True,
                    reversal_entry_id=reversal.id,
                    reversal_reason=reason,
                    reversed_at=datetime.now(timezone.utc),
                )
            )
            if marked.rowcount != 1:
                raise AlreadyReversedError(
                    f"Entry {original.entry_number} has already been reversed"
                )
            outcome = _result_for(reversal, JournalStatus.POSTED)
            original_number = original.entry_number
    except LedgerError as exc:
        logger.warning("Reversal of entry %s rejected: %s", entry_id, exc.message)
        return PostingResult.failed(exc)

    logger.info(
        "Reversed %s → %s by user %d", original_number, outcome.entry_number, actor_id
    )
    return outcome


async def get_journal_entry(ctx: LedgerContext, entry_id: int) -> JournalEntry | None:
    """Load a journal entry with its lines, refreshed from the database."""
    return await _load_entry(ctx.db, entry_id)


async def list_entries(
    ctx: LedgerContext,
    *,
    status: JournalStatus | None = None,
    loan_id: int | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[JournalEntry]:
    q = select(JournalEntry).order_by(JournalEntry.entry_date, JournalEntry.id)
    if status:
        q = q.where(JournalEntry.status == status)
    if loan_id:
        q = q.where(JournalEntry.loan_id == loan_id)
    if start:
        q = q.where(JournalEntry.entry_date >= start)
    if end:
        q = q.where(JournalEntry.entry_date <= end)
    result = await ctx.db.execute(q)
    return list(result.scalars().all())

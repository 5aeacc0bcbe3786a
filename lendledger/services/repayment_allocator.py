"""FIFO repayment allocation.

A payment is applied to outstanding installments oldest-due first; within
an installment, outstanding interest is settled before principal.  The
allocator only computes the split and the journal lines it implies; the loan
service persists both in one atomic unit.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from lendledger.models.loan import ScheduleStatus
from lendledger.money import ZERO, round_money
from lendledger.services.gl.errors import InvalidAmountError, OverpaymentError
from lendledger.services.gl.journal_engine import JournalLineInput

logger = logging.getLogger(__name__)

_STATUS_RANK = {
    ScheduleStatus.PENDING: 0,
    ScheduleStatus.PARTIAL: 1,
    ScheduleStatus.OVERDUE: 2,
    ScheduleStatus.PAID: 3,
}


@dataclass(frozen=True)
class InstallmentState:
    schedule_id: int
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    status: ScheduleStatus = ScheduleStatus.PENDING

    @property
    def interest_outstanding(self) -> Decimal:
        return max(self.interest_due - self.interest_paid, ZERO)

    @property
    def principal_outstanding(self) -> Decimal:
        return max(self.principal_due - self.principal_paid, ZERO)

    @property
    def outstanding(self) -> Decimal:
        return self.interest_outstanding + self.principal_outstanding


@dataclass(frozen=True)
class InstallmentAllocation:
    schedule_id: int
    installment_number: int
    interest_applied: Decimal
    principal_applied: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    status: ScheduleStatus

    @property
    def is_paid(self) -> bool:
        return self.status == ScheduleStatus.PAID


@dataclass
class PaymentAllocation:
    amount: Decimal
    total_outstanding: Decimal
    interest_total: Decimal = ZERO
    principal_total: Decimal = ZERO
    allocations: list[InstallmentAllocation] = field(default_factory=list)

    @property
    def applied_total(self) -> Decimal:
        return self.interest_total + self.principal_total

    @property
    def unapplied(self) -> Decimal:
        return self.amount - self.applied_total


def _next_status(
    current: ScheduleStatus, fully_paid: bool
) -> ScheduleStatus:
    target = ScheduleStatus.PAID if fully_paid else ScheduleStatus.PARTIAL
    # never move backwards: an OVERDUE installment stays OVERDUE until paid
    if _STATUS_RANK[target] < _STATUS_RANK[current]:
        return current
    return target


def allocate_payment(amount, installments: list[InstallmentState]) -> PaymentAllocation:
    """Split *amount* across *installments*, interest first, oldest due first.

    Raises ``InvalidAmountError`` for non-positive amounts and
    ``OverpaymentError`` when the amount exceeds everything outstanding.
    """
    payment = round_money(amount)
    if payment <= 0:
        raise InvalidAmountError(f"Payment amount must be positive, got {payment}", amount=payment)

    ordered = sorted(
        (inst for inst in installments if inst.status != ScheduleStatus.PAID),
        key=lambda inst: (inst.due_date, inst.installment_number),
    )
    total_outstanding = sum((inst.outstanding for inst in ordered), ZERO)
    if payment > total_outstanding:
        raise OverpaymentError(
            f"Payment {payment} exceeds total outstanding {total_outstanding}",
            amount=payment,
            total_outstanding=total_outstanding,
        )

    result = PaymentAllocation(amount=payment, total_outstanding=total_outstanding)
    remaining = payment
    for inst in ordered:
        if remaining <= 0:
            break
        to_interest = min(remaining, inst.interest_outstanding)
        remaining -= to_interest
        to_principal = min(remaining, inst.principal_outstanding)
        remaining -= to_principal
        if to_interest == 0 and to_principal == 0:
            continue

        interest_paid = inst.interest_paid + to_interest
        principal_paid = inst.principal_paid + to_principal
        fully_paid = interest_paid >= inst.interest_due and principal_paid >= inst.principal_due
        result.allocations.append(
            InstallmentAllocation(
                schedule_id=inst.schedule_id,
                installment_number=inst.installment_number,
                interest_applied=to_interest,
                principal_applied=to_principal,
                interest_paid=interest_paid,
                principal_paid=principal_paid,
                status=_next_status(inst.status, fully_paid),
            )
        )
        result.interest_total += to_interest
        result.principal_total += to_principal

    return result


def repayment_journal_lines(
    allocation: PaymentAllocation,
    *,
    cash_account_id: int,
    loans_receivable_account_id: int,
    interest_income_account_id: int,
    customer_id: int | None = None,
    loan_id: int | None = None,
    description: str = "Loan repayment",
) -> list[JournalLineInput]:
    """Debit cash; credit loans receivable (principal) and interest income (interest).

    Zero portions produce no line.
    """
    ref = {"customer_id": customer_id, "reference_type": "LOAN", "reference_id": loan_id}
    lines = [
        JournalLineInput(
            account_id=cash_account_id,
            debit_amount=allocation.applied_total,
            description=description,
            **ref,
        )
    ]
    if allocation.principal_total > 0:
        lines.append(
            JournalLineInput(
                account_id=loans_receivable_account_id,
                credit_amount=allocation.principal_total,
                description=f"{description} - principal",
                **ref,
            )
        )
    if allocation.interest_total > 0:
        lines.append(
            JournalLineInput(
                account_id=interest_income_account_id,
                credit_amount=allocation.interest_total,
                description=f"{description} - interest",
                **ref,
            )
        )
    return lines

"""Ledger error taxonomy and the result values returned by ledger operations.

Validation failures are raised as ``LedgerError`` subclasses *inside* an
atomic unit so the unit rolls back, then converted into a result value at the
operation boundary.  Callers inspect ``result.ok`` / ``result.error`` or call
``result.raise_for_error()`` to abort their own enclosing unit.
"""

import enum
from dataclasses import dataclass, field
from typing import Any


class LedgerErrorKind(str, enum.Enum):
    UNBALANCED_ENTRY = "UNBALANCED_ENTRY"
    ZERO_VALUE_ENTRY = "ZERO_VALUE_ENTRY"
    INVALID_ACCOUNT = "INVALID_ACCOUNT"
    PERIOD_CLOSED = "PERIOD_CLOSED"
    ALREADY_REVERSED = "ALREADY_REVERSED"
    NOT_POSTED = "NOT_POSTED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    CONFIG_ERROR = "CONFIG_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATUS = "INVALID_STATUS"
    SEGREGATION_OF_DUTIES = "SEGREGATION_OF_DUTIES"
    APPROVAL_LIMIT_EXCEEDED = "APPROVAL_LIMIT_EXCEEDED"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"
    PERIOD_NOT_CLOSABLE = "PERIOD_NOT_CLOSABLE"
    INVALID_PERIOD_TRANSITION = "INVALID_PERIOD_TRANSITION"
    REVERSAL_NOT_REVERSIBLE = "REVERSAL_NOT_REVERSIBLE"
    OVERPAYMENT = "OVERPAYMENT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"


class LedgerError(Exception):
    """Base exception for ledger errors.  ``details`` carries correctable specifics."""

    kind: LedgerErrorKind = LedgerErrorKind.INVALID_STATUS

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class UnbalancedEntryError(LedgerError):
    """Debits do not equal credits."""

    kind = LedgerErrorKind.UNBALANCED_ENTRY


class ZeroValueEntryError(LedgerError):
    kind = LedgerErrorKind.ZERO_VALUE_ENTRY


class InvalidAccountError(LedgerError):
    """Account missing, inactive or a header account."""

    kind = LedgerErrorKind.INVALID_ACCOUNT


class PeriodClosedError(LedgerError):
    """Entry dated inside a hard-closed period."""

    kind = LedgerErrorKind.PERIOD_CLOSED


class AlreadyReversedError(LedgerError):
    kind = LedgerErrorKind.ALREADY_REVERSED


class NotPostedError(LedgerError):
    kind = LedgerErrorKind.NOT_POSTED


class InsufficientBalanceError(LedgerError):
    kind = LedgerErrorKind.INSUFFICIENT_BALANCE


class ConfigError(LedgerError):
    """Required account code is not provisioned.  Raised, never returned."""

    kind = LedgerErrorKind.CONFIG_ERROR


class NotFoundError(LedgerError):
    kind = LedgerErrorKind.NOT_FOUND


class StatusTransitionError(LedgerError):
    """Invalid status transition attempted."""

    kind = LedgerErrorKind.INVALID_STATUS


class SegregationOfDutiesError(LedgerError):
    kind = LedgerErrorKind.SEGREGATION_OF_DUTIES


class ApprovalLimitError(LedgerError):
    kind = LedgerErrorKind.APPROVAL_LIMIT_EXCEEDED


class DuplicateReferenceError(LedgerError):
    kind = LedgerErrorKind.DUPLICATE_REFERENCE


class PeriodNotClosableError(LedgerError):
    kind = LedgerErrorKind.PERIOD_NOT_CLOSABLE


class PeriodTransitionError(LedgerError):
    kind = LedgerErrorKind.INVALID_PERIOD_TRANSITION


class ReversalNotReversibleError(LedgerError):
    kind = LedgerErrorKind.REVERSAL_NOT_REVERSIBLE


class OverpaymentError(LedgerError):
    kind = LedgerErrorKind.OVERPAYMENT


class InvalidAmountError(LedgerError):
    kind = LedgerErrorKind.INVALID_AMOUNT


class TransactionTimeoutError(LedgerError):
    kind = LedgerErrorKind.TRANSACTION_TIMEOUT


_ERRORS_BY_KIND: dict[LedgerErrorKind, type[LedgerError]] = {
    cls.kind: cls
    for cls in (
        UnbalancedEntryError,
        ZeroValueEntryError,
        InvalidAccountError,
        PeriodClosedError,
        AlreadyReversedError,
        NotPostedError,
        InsufficientBalanceError,
        ConfigError,
        NotFoundError,
        StatusTransitionError,
        SegregationOfDutiesError,
        ApprovalLimitError,
        DuplicateReferenceError,
        PeriodNotClosableError,
        PeriodTransitionError,
        ReversalNotReversibleError,
        OverpaymentError,
        InvalidAmountError,
        TransactionTimeoutError,
    )
}


def error_for_kind(kind: LedgerErrorKind, message: str, **details: Any) -> LedgerError:
    return _ERRORS_BY_KIND.get(kind, LedgerError)(message, **details)


# ---------------------------------------------------------------------------
# Result values
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class LedgerResult:
    """Outcome of a ledger operation: success, or a tagged error kind."""

    error: LedgerErrorKind | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, exc: LedgerError, **fields: Any):
        return cls(error=exc.kind, message=exc.message, details=dict(exc.details), **fields)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise error_for_kind(self.error, self.message or self.error.value, **self.details)

"""SQLAlchemy models for the lendledger ledger core."""

from lendledger.models.gl import (  # noqa: F401
    Account,
    AccountType,
    BalanceSide,
    FinancialPeriod,
    JournalEntry,
    JournalEntryLine,
    JournalEntryType,
    JournalStatus,
    PeriodStatus,
    Sequence,
    SourceModule,
)
from lendledger.models.loan import (  # noqa: F401
    InterestMethod,
    Loan,
    LoanRepayment,
    LoanSchedule,
    LoanStatus,
    ScheduleStatus,
)
from lendledger.models.deposit import (  # noqa: F401
    FixedDeposit,
    FixedDepositRate,
    FixedDepositStatus,
    MaturityInstruction,
    SavingsAccount,
    SavingsAccountStatus,
    SavingsTransaction,
    SavingsTransactionType,
)

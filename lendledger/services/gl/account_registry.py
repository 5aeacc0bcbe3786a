"""Typed registry of the GL accounts the workflows post to.

Configured account codes are resolved once, at startup, into frozen
``AccountHandle`` values.  A missing, inactive or header account is a fatal
configuration error raised by ``AccountRegistry.load``.
"""

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.config import Settings, settings as default_settings
from lendledger.models.gl import Account, BalanceSide
from lendledger.services.gl.errors import ConfigError

logger = logging.getLogger(__name__)


class AccountRole(str, enum.Enum):
    CASH_BANK = "cash_bank"
    LOANS_RECEIVABLE = "loans_receivable"
    INTEREST_INCOME = "interest_income"
    FEE_INCOME = "fee_income"
    SAVINGS_LIABILITY = "savings_liability"
    FD_LIABILITY = "fd_liability"
    INTEREST_PAYABLE = "interest_payable"
    INTEREST_EXPENSE = "interest_expense"


_ROLE_SETTINGS: dict[AccountRole, str] = {
    AccountRole.CASH_BANK: "cash_bank_code",
    AccountRole.LOANS_RECEIVABLE: "loans_receivable_code",
    AccountRole.INTEREST_INCOME: "interest_income_code",
    AccountRole.FEE_INCOME: "fee_income_code",
    AccountRole.SAVINGS_LIABILITY: "savings_liability_code",
    AccountRole.FD_LIABILITY: "fd_liability_code",
    AccountRole.INTEREST_PAYABLE: "interest_payable_code",
    AccountRole.INTEREST_EXPENSE: "interest_expense_code",
}


@dataclass(frozen=True)
class AccountHandle:
    id: int
    code: str
    name: str
    normal_balance: BalanceSide


class AccountRegistry:
    def __init__(self, handles: dict[AccountRole, AccountHandle]):
        self._handles = dict(handles)

    def __getitem__(self, role: AccountRole) -> AccountHandle:
        try:
            return self._handles[role]
        except KeyError:
            raise ConfigError(f"No account resolved for role {role.value}", role=role.value)

    def __contains__(self, role: AccountRole) -> bool:
        return role in self._handles

    def handles(self) -> dict[AccountRole, AccountHandle]:
        return dict(self._handles)

    @classmethod
    def required_codes(cls, settings: Settings | None = None) -> dict[AccountRole, str]:
        cfg = settings or default_settings
        return {role: getattr(cfg, attr) for role, attr in _ROLE_SETTINGS.items()}

    @classmethod
    async def load(cls, db: AsyncSession, settings: Settings | None = None) -> "AccountRegistry":
        """Resolve every required role in one query or raise ``ConfigError``."""
        codes = cls.required_codes(settings)
        result = await db.execute(
            select(Account).where(Account.account_code.in_(sorted(set(codes.values()))))
        )
        by_code = {a.account_code: a for a in result.scalars().all()}

        problems: dict[str, str] = {}
        handles: dict[AccountRole, AccountHandle] = {}
        for role, code in codes.items():
            acct = by_code.get(code)
            if acct is None:
                problems[code] = "missing"
            elif acct.is_header:
                problems[code] = "header account"
            elif not acct.is_active:
                problems[code] = "inactive"
            else:
                handles[role] = AccountHandle(
                    id=acct.id,
                    code=acct.account_code,
                    name=acct.account_name,
                    normal_balance=acct.normal_balance,
                )

        if problems:
            summary = ", ".join(f"{code} ({why})" for code, why in sorted(problems.items()))
            raise ConfigError(
                f"Required GL accounts are not usable: {summary}",
                accounts=problems,
            )

        logger.info("Account registry loaded %d roles", len(handles))
        return cls(handles)

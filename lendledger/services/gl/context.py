"""Ledger context: the explicit session, account registry and settings.

Every ledger and workflow call receives a ``LedgerContext``; nothing in the
ledger core reaches for a global session.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.config import Settings, settings as default_settings
from lendledger.services.gl.account_registry import AccountRegistry
from lendledger.services.gl.errors import TransactionTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Identity supplied by the authorization layer.

    ``approval_limit`` of ``None`` means unlimited.
    """

    actor_id: int
    approval_limit: Decimal | None = None


class LedgerContext:
    def __init__(
        self,
        db: AsyncSession,
        accounts: AccountRegistry,
        settings: Settings | None = None,
    ):
        self.db = db
        self.accounts = accounts
        self.settings = settings or default_settings

    @classmethod
    async def create(cls, db: AsyncSession, settings: Settings | None = None) -> "LedgerContext":
        """Build a context, resolving the account registry (fails fast on bad config)."""
        cfg = settings or default_settings
        registry = await AccountRegistry.load(db, cfg)
        return cls(db, registry, cfg)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One bounded atomic unit.

        Opens a transaction, or a SAVEPOINT when the session is already inside
        one so the unit composes into the caller's transaction.  The unit is
        rolled back and ``TransactionTimeoutError`` raised if it runs longer
        than ``ledger_tx_timeout_seconds``.
        """
        timeout = self.settings.ledger_tx_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                if self.db.in_transaction():
                    async with self.db.begin_nested():
                        yield self.db
                else:
                    async with self.db.begin():
                        yield self.db
        except TimeoutError as exc:
            logger.error("Ledger transaction exceeded %.1fs and was rolled back", timeout)
            raise TransactionTimeoutError(
                f"Ledger transaction exceeded {timeout}s", timeout_seconds=timeout
            ) from exc

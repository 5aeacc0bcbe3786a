"""Shared fixtures: a seeded SQLite ledger per test and small posting helpers."""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lendledger.database import build_engine, init_models
from lendledger.seed_gl import seed_chart_of_accounts, seed_fixed_deposit_rates
from lendledger.services.gl.account_registry import AccountRole
from lendledger.services.gl.context import LedgerContext
from lendledger.services.gl.journal_engine import EntryMetadata, JournalLineInput


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        await seed_chart_of_accounts(session)
        await seed_fixed_deposit_rates(session)
        await session.commit()
        yield session


@pytest_asyncio.fixture
async def ctx(db):
    context = await LedgerContext.create(db)
    await db.commit()
    return context


@pytest.fixture
def accounts(ctx):
    """Role → account id for the accounts the workflows post to."""
    return {role: ctx.accounts[role].id for role in AccountRole}


def line(account_id: int, *, dr="0", cr="0", description: str | None = None) -> JournalLineInput:
    return JournalLineInput(
        account_id=account_id,
        debit_amount=Decimal(dr),
        credit_amount=Decimal(cr),
        description=description,
    )


def meta(description: str = "Test entry", **fields) -> EntryMetadata:
    fields.setdefault("created_by", 1)
    return EntryMetadata(description=description, **fields)


BUSINESS_DATE = date(2025, 3, 15)

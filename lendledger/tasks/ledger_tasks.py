"""Celery tasks wrapping the end-of-day ledger jobs."""

import asyncio
import logging
from datetime import date

from lendledger.config import settings
from lendledger.database import async_session
from lendledger.logging_config import configure_logging
from lendledger.services import batch_service
from lendledger.services.gl import reports_service
from lendledger.services.gl.context import LedgerContext
from lendledger.tasks import celery_app

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

__all__ = [
    "mark_overdue_schedules",
    "accrue_fixed_deposit_interest",
    "process_matured_fixed_deposits",
    "credit_savings_interest",
    "reconcile_balances",
]


def _run(coro_factory):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro_factory())
    finally:
        loop.close()


def _run_job(job, as_of: str | None) -> dict:
    business_date = date.fromisoformat(as_of) if as_of else None

    async def _job():
        async with async_session() as db:
            ctx = await LedgerContext.create(db)
            run = await job(ctx, business_date)
            await db.commit()
            return {
                "job": run.job,
                "as_of": run.as_of.isoformat(),
                "processed": run.processed,
                "skipped": run.skipped,
                "failed": run.failed,
                "total_amount": str(run.total_amount),
                "errors": run.errors,
            }

    return _run(_job)


@celery_app.task(name="lendledger.tasks.ledger_tasks.mark_overdue_schedules")
def mark_overdue_schedules(as_of: str | None = None):
    """Flag unpaid installments past their due date."""
    return _run_job(batch_service.mark_overdue_schedules, as_of)


@celery_app.task(name="lendledger.tasks.ledger_tasks.accrue_fixed_deposit_interest")
def accrue_fixed_deposit_interest(as_of: str | None = None):
    return _run_job(batch_service.accrue_fixed_deposit_interest, as_of)


@celery_app.task(name="lendledger.tasks.ledger_tasks.process_matured_fixed_deposits")
def process_matured_fixed_deposits(as_of: str | None = None):
    return _run_job(batch_service.process_matured_fixed_deposits, as_of)


@celery_app.task(name="lendledger.tasks.ledger_tasks.credit_savings_interest")
def credit_savings_interest(as_of: str | None = None):
    """Monthly interest on savings balances; runs on the first of the month."""
    return _run_job(batch_service.credit_savings_interest, as_of)


@celery_app.task(name="lendledger.tasks.ledger_tasks.reconcile_balances")
def reconcile_balances():
    """Compare cached balances against a replay of posted lines."""

    async def _job():
        async with async_session() as db:
            ctx = await LedgerContext.create(db)
            discrepancies = await reports_service.reconcile_balances(ctx)
            for d in discrepancies:
                logger.error(
                    "Account %s cached %s but replays to %s",
                    d.account_code, d.cached_balance, d.computed_balance,
                )
            return [
                {
                    "account_code": d.account_code,
                    "cached_balance": str(d.cached_balance),
                    "computed_balance": str(d.computed_balance),
                }
                for d in discrepancies
            ]

    return _run(_job)

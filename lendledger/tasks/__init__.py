"""Celery app and beat schedule for the end-of-day ledger jobs."""

from celery import Celery
from celery.schedules import crontab

from lendledger.config import settings

celery_app = Celery(
    "lendledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.batch_timezone,
    enable_utc=True,
)

celery_app.conf.beat_schedule = {
    "mark-overdue-schedules": {
        "task": "lendledger.tasks.ledger_tasks.mark_overdue_schedules",
        "schedule": crontab(hour=0, minute=5),
    },
    "accrue-fixed-deposit-interest": {
        "task": "lendledger.tasks.ledger_tasks.accrue_fixed_deposit_interest",
        "schedule": crontab(hour=0, minute=15),
    },
    "process-matured-fixed-deposits": {
        "task": "lendledger.tasks.ledger_tasks.process_matured_fixed_deposits",
        "schedule": crontab(hour=0, minute=30),
    },
    "credit-savings-interest": {
        "task": "lendledger.tasks.ledger_tasks.credit_savings_interest",
        "schedule": crontab(hour=0, minute=45, day_of_month=1),
    },
    "reconcile-balances": {
        "task": "lendledger.tasks.ledger_tasks.reconcile_balances",
        "schedule": crontab(hour=1, minute=0),
    },
}

# Import tasks so they get registered
from lendledger.tasks.ledger_tasks import *  # noqa

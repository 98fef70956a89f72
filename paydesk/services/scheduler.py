from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from aiojobs import create_scheduler
from sqlalchemy import func, select

from paydesk.config import settings
from paydesk.db.models import REVIEWABLE_STATUSES, Order
from paydesk.db.session import session_scope
from paydesk.services.ledger import reconcile_all
from paydesk.services.notifications import aclose_bot, notify_log
from paydesk.utils.correlation import correlation_scope
from paydesk.utils.time import db_now

logger = logging.getLogger(__name__)


async def job_reconcile_ledger() -> None:
    """Compare every ledger account with the sum of its entries."""
    with correlation_scope():
        mismatches = await reconcile_all()
        if mismatches:
            logger.error("job_reconcile_ledger: %d mismatched accounts", len(mismatches))


async def job_review_backlog() -> int:
    """Remind the log chat about claims waiting longer than REVIEW_BACKLOG_HOURS."""
    hours = settings.review_backlog_hours
    cutoff = db_now() - timedelta(hours=hours)
    async with session_scope() as session:
        count = await session.scalar(
            select(func.count(Order.id)).where(Order.status.in_(REVIEWABLE_STATUSES), Order.created_at < cutoff)
        )
    count = int(count or 0)
    if count > 0:
        logger.info("review backlog", extra={"extra": {"count": count, "hours": hours}})
        await notify_log(f"⏳ {count} payment claims have waited more than {hours}h for review. /orders_pending")
    return count


async def run_scheduler() -> None:
    sched = await create_scheduler()

    async def periodic(coro, interval: float) -> None:
        while True:
            try:
                await coro()
            except Exception as e:
                logger.exception("periodic job error: %s", e)
            await asyncio.sleep(interval)

    await sched.spawn(periodic(job_reconcile_ledger, settings.reconcile_interval_minutes * 60))
    await sched.spawn(periodic(job_review_backlog, 60 * 60))  # hourly

    logger.info("scheduler started")
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        await sched.close()
        await aclose_bot()
        raise

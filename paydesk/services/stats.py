from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.db.models import ORDER_APPROVED, REVIEWABLE_STATUSES, CheckinRecord, LedgerEntry, Order
from paydesk.db.session import session_scope
from paydesk.services.errors import ValidationError


@dataclass
class DailyStat:
    date: str
    earned: int
    spent: int

    @property
    def net_change(self) -> int:
        return self.earned - self.spent


@dataclass
class TypeBreakdown:
    type: str
    count: int
    total_amount: int


@dataclass
class Stats:
    total_earned: int = 0
    total_spent: int = 0
    daily: List[DailyStat] = field(default_factory=list)
    by_type: List[TypeBreakdown] = field(default_factory=list)
    # {kind: {status: count}}
    orders: Dict[str, Dict[str, int]] = field(default_factory=dict)
    approved_revenue: int = 0  # cents
    needs_review: int = 0
    checkins: int = 0

    @property
    def total_circulation(self) -> int:
        return self.total_earned - self.total_spent


def _window(column, start: Optional[datetime], end: Optional[datetime]) -> list:
    conditions = []
    if start is not None:
        conditions.append(column >= start)
    if end is not None:
        conditions.append(column < end)
    return conditions


async def get_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Stats:
    """Aggregate ledger and order figures over ``[start, end)``. Read only."""
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end")

    earned_expr = func.coalesce(func.sum(case((LedgerEntry.amount > 0, LedgerEntry.amount), else_=0)), 0)
    spent_expr = func.coalesce(func.sum(case((LedgerEntry.amount < 0, -LedgerEntry.amount), else_=0)), 0)
    entry_window = _window(LedgerEntry.created_at, start, end)
    order_window = _window(Order.created_at, start, end)
    stats = Stats()

    async with session_scope(sessions) as session:
        totals = (await session.execute(select(earned_expr, spent_expr).where(*entry_window))).one()
        stats.total_earned, stats.total_spent = int(totals[0]), int(totals[1])

        day = func.date(LedgerEntry.created_at)
        rows = await session.execute(
            select(day.label("day"), earned_expr, spent_expr).where(*entry_window).group_by(day).order_by(day)
        )
        stats.daily = [DailyStat(date=str(r[0]), earned=int(r[1]), spent=int(r[2])) for r in rows]

        rows = await session.execute(
            select(LedgerEntry.type, func.count(LedgerEntry.id), func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(*entry_window)
            .group_by(LedgerEntry.type)
            .order_by(LedgerEntry.type)
        )
        stats.by_type = [TypeBreakdown(type=r[0], count=int(r[1]), total_amount=int(r[2])) for r in rows]

        rows = await session.execute(
            select(Order.kind, Order.status, func.count(Order.id)).where(*order_window).group_by(Order.kind, Order.status)
        )
        for kind, status, count in rows:
            stats.orders.setdefault(kind, {})[status] = int(count)
            if status in REVIEWABLE_STATUSES:
                stats.needs_review += int(count)

        revenue = await session.scalar(
            select(func.coalesce(func.sum(Order.price), 0)).where(Order.status == ORDER_APPROVED, *order_window)
        )
        stats.approved_revenue = int(revenue or 0)

        stats.checkins = int(
            await session.scalar(
                select(func.count(CheckinRecord.id)).where(*_window(CheckinRecord.created_at, start, end))
            )
            or 0
        )
    return stats

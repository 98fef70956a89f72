from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.db.membership_store import MembershipStore
from paydesk.db.models import ENTRY_EXCHANGE, LEVEL_FREE, MEMBER_LEVELS, MembershipPlan
from paydesk.db.session import run_in_transaction, session_scope
from paydesk.services.audit import log_audit
from paydesk.services.errors import NotFound, ValidationError
from paydesk.services.ledger import debit, run_ledger_unit
from paydesk.utils.time import db_now

logger = logging.getLogger(__name__)

PAID_LEVELS = tuple(level for level in MEMBER_LEVELS if level != LEVEL_FREE)


@dataclass
class ActivationResult:
    user_id: str
    previous_level: str
    previous_expiry: Optional[datetime]
    new_level: str
    new_expiry: Optional[datetime]


@dataclass
class MembershipStatus:
    user_id: str
    member_level: str
    expires_at: Optional[datetime]
    is_active: bool
    days_remaining: int


@dataclass
class ExchangeResult:
    coins_spent: int
    balance: int
    activation: ActivationResult


def effective_level(level: str, expires_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    now = now or db_now()
    if level == LEVEL_FREE or expires_at is None or expires_at < now:
        return LEVEL_FREE
    return level


def calculate_new_expiry(
    current_level: str,
    current_expiry: Optional[datetime],
    duration_days: int,
    now: Optional[datetime] = None,
) -> datetime:
    """Stack ``duration_days`` on top of a still-active membership, else start from now."""
    now = now or db_now()
    active = current_level != LEVEL_FREE and current_expiry is not None and current_expiry >= now
    base = current_expiry if active else now
    return base + timedelta(days=duration_days)


def _days_remaining(expires_at: Optional[datetime], now: datetime) -> int:
    if expires_at is None or expires_at < now:
        return 0
    return math.ceil((expires_at - now).total_seconds() / 86400)


async def activate_membership(
    session: AsyncSession,
    user_id: str,
    level: str,
    duration_days: int,
    *,
    log_as: Optional[str] = None,
    reason: str = "",
) -> ActivationResult:
    """Grant ``level`` for ``duration_days`` inside the caller's transaction.

    When ``log_as`` is given an adjust log row is written with that actor.
    """
    if duration_days <= 0:
        raise ValidationError("duration_days must be positive")
    if level not in PAID_LEVELS:
        raise ValidationError(f"cannot activate membership level {level!r}")
    store = MembershipStore(session)
    membership = await store.get_or_create_for_update(user_id)
    previous_level, previous_expiry = membership.member_level, membership.expires_at
    new_expiry = calculate_new_expiry(previous_level, previous_expiry, duration_days)
    await store.set_state(membership, level, new_expiry)
    if log_as is not None:
        await store.add_adjust_log(
            user_id=user_id,
            admin_id=str(log_as),
            previous_level=previous_level,
            new_level=level,
            previous_expiry=previous_expiry,
            new_expiry=new_expiry,
            reason=reason or "membership activated",
        )
    return ActivationResult(user_id, previous_level, previous_expiry, level, new_expiry)


async def adjust_membership(
    user_id: str,
    admin_id: str,
    level: str,
    expires_at: Optional[datetime],
    reason: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ActivationResult:
    if level not in MEMBER_LEVELS:
        raise ValidationError(f"unknown membership level: {level}")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("a reason is required for membership adjustments")
    if level != LEVEL_FREE and expires_at is None:
        raise ValidationError("paid levels need an expiry")

    async def work(session: AsyncSession) -> ActivationResult:
        store = MembershipStore(session)
        membership = await store.get_or_create_for_update(user_id)
        previous_level, previous_expiry = membership.member_level, membership.expires_at
        await store.set_state(membership, level, expires_at)
        await store.add_adjust_log(
            user_id=user_id,
            admin_id=str(admin_id),
            previous_level=previous_level,
            new_level=level,
            previous_expiry=previous_expiry,
            new_expiry=expires_at,
            reason=reason,
        )
        await log_audit(
            session,
            actor=str(admin_id),
            action="membership_adjusted",
            target_type="membership",
            target_id=user_id,
            meta={"level": level, "expires_at": expires_at.isoformat() if expires_at else None, "reason": reason},
        )
        return ActivationResult(user_id, previous_level, previous_expiry, level, expires_at)

    return await run_in_transaction(work, sessions=sessions, op="adjust_membership")


async def get_membership_status(
    user_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> MembershipStatus:
    async with session_scope(sessions) as session:
        membership = await MembershipStore(session).get(user_id)
    now = db_now()
    if membership is None:
        return MembershipStatus(user_id, LEVEL_FREE, None, False, 0)
    level = effective_level(membership.member_level, membership.expires_at, now)
    return MembershipStatus(
        user_id=user_id,
        member_level=level,
        expires_at=membership.expires_at,
        is_active=level != LEVEL_FREE,
        days_remaining=_days_remaining(membership.expires_at, now) if level != LEVEL_FREE else 0,
    )


async def exchange_coins_for_membership(
    user_id: str,
    plan_id: int,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ExchangeResult:
    """Pay a plan's ``coin_price`` from the balance and grant the plan, atomically."""

    async def work(session: AsyncSession) -> ExchangeResult:
        plan = await _require_plan(session, plan_id)
        if plan.coin_price <= 0:
            raise ValidationError("this plan cannot be bought with coins")
        balance = await debit(
            session,
            user_id,
            plan.coin_price,
            ENTRY_EXCHANGE,
            f"exchange for {plan.name}",
            {"plan_id": plan.id, "plan_name": plan.name, "member_level": plan.member_level, "duration_days": plan.duration_days},
        )
        activation = await activate_membership(session, user_id, plan.member_level, plan.duration_days)
        return ExchangeResult(coins_spent=plan.coin_price, balance=balance, activation=activation)

    result = await run_ledger_unit(work, sessions=sessions, op="exchange_coins_for_membership")
    logger.info(
        "coins exchanged for membership",
        extra={"extra": {"user_id": user_id, "plan_id": plan_id, "coins": result.coins_spent}},
    )
    return result


async def _require_plan(session: AsyncSession, plan_id: int) -> MembershipPlan:
    plan = await MembershipStore(session).get_plan(plan_id)
    if plan is None:
        raise NotFound("MembershipPlan", plan_id)
    if not plan.enabled:
        raise ValidationError("membership plan is disabled", detail={"plan_id": plan_id})
    if plan.member_level not in PAID_LEVELS:
        raise ValidationError("membership plan has no paid level", detail={"plan_id": plan_id})
    return plan


async def create_plan(
    name: str,
    member_level: str,
    duration_days: int,
    price: int,
    coin_price: int,
    *,
    enabled: bool = True,
    sort_order: int = 0,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> MembershipPlan:
    if not (name or "").strip():
        raise ValidationError("plan name is required")
    if member_level not in PAID_LEVELS:
        raise ValidationError("plan level must be vip or svip")
    if duration_days <= 0:
        raise ValidationError("duration_days must be positive")
    if price < 0 or coin_price < 0:
        raise ValidationError("prices cannot be negative")

    async def work(session: AsyncSession) -> MembershipPlan:
        plan = MembershipPlan(
            name=name.strip(),
            member_level=member_level,
            duration_days=duration_days,
            price=price,
            coin_price=coin_price,
            enabled=enabled,
            sort_order=sort_order,
            updated_at=db_now(),
        )
        return await MembershipStore(session).add_plan(plan)

    return await run_in_transaction(work, sessions=sessions, op="create_plan")


async def list_plans(
    enabled_only: bool = True,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> List[MembershipPlan]:
    async with session_scope(sessions) as session:
        return await MembershipStore(session).list_plans(enabled_only)


async def get_plan(
    plan_id: int,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Optional[MembershipPlan]:
    async with session_scope(sessions) as session:
        return await MembershipStore(session).get_plan(plan_id)

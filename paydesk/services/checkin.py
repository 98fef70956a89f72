from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.db.checkin_store import CheckinStore
from paydesk.db.ledger_store import LedgerStore
from paydesk.db.models import ENTRY_CHECKIN, CheckinRecord
from paydesk.db.session import session_scope
from paydesk.services.errors import Duplicate, ValidationError
from paydesk.services.ledger import credit, run_ledger_unit
from paydesk.services.runtime_config import load_checkin_rules
from paydesk.utils.time import utc_today

logger = logging.getLogger(__name__)


class CheckinOutcome(str, enum.Enum):
    CHECKED_IN = "checked_in"
    ALREADY_CHECKED_IN = "already_checked_in"


@dataclass
class CheckinResult:
    outcome: CheckinOutcome
    streak_count: int
    coins_earned: int
    bonus: int
    balance: int
    next_checkin_date: date


@dataclass
class CheckinStatus:
    can_checkin: bool
    last_checkin_date: Optional[date]
    streak_count: int
    next_checkin_date: date


async def _already(user_id: str, today: date, sessions) -> CheckinResult:
    async with session_scope(sessions) as session:
        record = await CheckinStore(session).find(user_id, today)
        account = await LedgerStore(session).get_account(user_id)
    return _already_result(record, account.balance if account else 0, today)


def _already_result(record: Optional[CheckinRecord], balance: int, today: date) -> CheckinResult:
    return CheckinResult(
        outcome=CheckinOutcome.ALREADY_CHECKED_IN,
        streak_count=record.streak_count if record else 0,
        coins_earned=0,
        bonus=0,
        balance=balance,
        next_checkin_date=today + timedelta(days=1),
    )


async def checkin(
    user_id: str,
    today: Optional[date] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> CheckinResult:
    """Daily check-in. A second call on the same day changes nothing."""
    if not user_id:
        raise ValidationError("user_id is required")
    today = today or utc_today()

    async def work(session: AsyncSession) -> CheckinResult:
        store = CheckinStore(session)
        existing = await store.find(user_id, today)
        if existing is not None:
            account = await LedgerStore(session).get_account(user_id)
            return _already_result(existing, account.balance if account else 0, today)

        rules = await load_checkin_rules(session)
        yesterday = await store.find(user_id, today - timedelta(days=1))
        streak = rules.next_streak(yesterday.streak_count if yesterday else None)
        bonus = rules.bonus_for(streak)
        reward = rules.reward_for(streak)
        # the unique (user_id, checkin_date) key is the final arbiter
        await store.insert(user_id, today, streak, reward)
        if reward > 0:
            balance = await credit(
                session,
                user_id,
                reward,
                ENTRY_CHECKIN,
                f"check-in day {streak}, {reward} coins",
                {"streak_count": streak, "base_reward": rules.base_reward, "bonus": bonus, "date": today.isoformat()},
            )
        else:
            # zero-reward days keep the streak but write no ledger entry
            account = await LedgerStore(session).get_account(user_id)
            balance = account.balance if account else 0
        return CheckinResult(
            outcome=CheckinOutcome.CHECKED_IN,
            streak_count=streak,
            coins_earned=reward,
            bonus=bonus,
            balance=balance,
            next_checkin_date=today + timedelta(days=1),
        )

    try:
        result = await run_ledger_unit(work, sessions=sessions, op="checkin")
    except Duplicate:
        return await _already(user_id, today, sessions)
    if result.outcome is CheckinOutcome.CHECKED_IN:
        logger.info(
            "user checked in",
            extra={"extra": {"user_id": user_id, "streak": result.streak_count, "coins": result.coins_earned}},
        )
    return result


async def get_checkin_status(
    user_id: str,
    today: Optional[date] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> CheckinStatus:
    today = today or utc_today()
    async with session_scope(sessions) as session:
        last = await CheckinStore(session).latest(user_id)
    checked_today = last is not None and last.checkin_date == today
    streak = 0
    if last is not None and last.checkin_date >= today - timedelta(days=1):
        streak = last.streak_count
    return CheckinStatus(
        can_checkin=not checked_today,
        last_checkin_date=last.checkin_date if last else None,
        streak_count=streak,
        next_checkin_date=today + timedelta(days=1) if checked_today else today,
    )

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.config import settings
from paydesk.db.models import Setting
from paydesk.db.session import run_in_transaction
from paydesk.services.audit import log_audit
from paydesk.services.errors import ValidationError
from paydesk.utils.time import db_now

logger = logging.getLogger(__name__)

KEY_CHECKIN_BASE_REWARD = "CHECKIN_BASE_REWARD"
KEY_CHECKIN_STREAK_BONUS = "CHECKIN_STREAK_BONUS"
KEY_CHECKIN_STREAK_MAX = "CHECKIN_STREAK_MAX"
KEY_RECHARGE_PACKAGES = "RECHARGE_PACKAGES"


@dataclass(frozen=True)
class CheckinRules:
    base_reward: int
    streak_bonus: List[int]
    streak_max: int

    def next_streak(self, previous: Optional[int]) -> int:
        """Streak for today given yesterday's streak (None when yesterday was missed)."""
        if previous is None:
            return 1
        streak = previous + 1
        return 1 if streak > self.streak_max else streak

    def bonus_for(self, streak: int) -> int:
        idx = min(streak, self.streak_max) - 1
        if idx < 0 or idx >= len(self.streak_bonus):
            return 0
        return self.streak_bonus[idx]

    def reward_for(self, streak: int) -> int:
        return self.base_reward + self.bonus_for(streak)


@dataclass(frozen=True)
class RechargePackage:
    coins: int
    price: float  # yuan
    bonus: int = 0

    @property
    def total_coins(self) -> int:
        return self.coins + self.bonus

    @property
    def price_cents(self) -> int:
        return int(round(self.price * 100))


def _parse_int_list(raw: str) -> List[int]:
    return [int(x.strip()) for x in raw.split(",") if x.strip()]


def parse_packages(raw: str) -> List[RechargePackage]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("recharge packages must be a JSON list")
    return [
        RechargePackage(coins=int(item["coins"]), price=float(item["price"]), bonus=int(item.get("bonus") or 0))
        for item in data
    ]


# Parsers raise ValueError for anything a loader must not use.

def _parse_base_reward(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError("base reward must be a non-negative integer")
    return value


def _parse_streak_bonus(raw: str) -> List[int]:
    parsed = json.loads(raw) if raw.startswith("[") else _parse_int_list(raw)
    if not isinstance(parsed, list):
        raise ValueError("streak bonus must be a list of integers")
    bonus = [int(x) for x in parsed]
    if any(b < 0 for b in bonus):
        raise ValueError("streak bonuses must be non-negative integers")
    return bonus


def _parse_streak_max(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise ValueError("streak max must be a positive integer")
    return value


def _parse_recharge_packages(raw: str) -> List[RechargePackage]:
    packages = parse_packages(raw)
    if not packages:
        raise ValueError("at least one recharge package is required")
    for p in packages:
        if p.coins <= 0 or p.price_cents <= 0 or p.bonus < 0:
            raise ValueError("recharge packages need positive coins and price and a non-negative bonus")
    return packages


_PARSERS: Dict[str, Callable[[str], Any]] = {
    KEY_CHECKIN_BASE_REWARD: _parse_base_reward,
    KEY_CHECKIN_STREAK_BONUS: _parse_streak_bonus,
    KEY_CHECKIN_STREAK_MAX: _parse_streak_max,
    KEY_RECHARGE_PACKAGES: _parse_recharge_packages,
}
CONFIG_KEYS = tuple(_PARSERS)


def validate_config_value(key: str, raw: str) -> Any:
    """Parse ``raw`` for ``key``; raises ``ValidationError`` when it cannot be used."""
    parser = _PARSERS.get(key)
    if parser is None:
        raise ValidationError(f"unknown config key: {key}", detail={"keys": list(CONFIG_KEYS)})
    try:
        return parser((raw or "").strip())
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError(f"invalid value for {key}: {e}", detail={"key": key}) from None


async def get_override(session: AsyncSession, key: str) -> Optional[str]:
    row = await session.scalar(select(Setting).where(Setting.key == key))
    if row is None:
        return None
    value = str(row.value).strip()
    return value or None


async def set_override(session: AsyncSession, key: str, value: str) -> None:
    row = await session.get(Setting, key)
    if row is None:
        session.add(Setting(key=key, value=value, updated_at=db_now()))
    else:
        row.value = value
        row.updated_at = db_now()
    await session.flush()


async def _load(session: AsyncSession, key: str, default: Any) -> Any:
    raw = await get_override(session, key)
    if raw is None:
        return default
    try:
        return _PARSERS[key](raw)
    except (ValueError, KeyError, TypeError):
        logger.warning("invalid %s override %r, using environment value", key, raw)
        return default


async def load_checkin_rules(session: AsyncSession) -> CheckinRules:
    return CheckinRules(
        base_reward=await _load(session, KEY_CHECKIN_BASE_REWARD, settings.checkin_base_reward),
        streak_bonus=await _load(session, KEY_CHECKIN_STREAK_BONUS, _parse_int_list(settings.checkin_streak_bonus)),
        streak_max=await _load(session, KEY_CHECKIN_STREAK_MAX, settings.checkin_streak_max),
    )


async def load_recharge_packages(session: AsyncSession) -> List[RechargePackage]:
    return await _load(session, KEY_RECHARGE_PACKAGES, parse_packages(settings.recharge_packages))


async def update_config(
    key: str,
    value: str,
    admin_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> str:
    """Store a validated override for ``key``. Returns the stored value."""
    validate_config_value(key, value)
    value = value.strip()

    async def work(session: AsyncSession) -> str:
        previous = await get_override(session, key)
        await set_override(session, key, value)
        await log_audit(
            session,
            actor=str(admin_id),
            action="config_updated",
            target_type="setting",
            target_id=key,
            meta={"previous": previous, "value": value},
        )
        return value

    stored = await run_in_transaction(work, sessions=sessions, op="update_config")
    logger.info("config updated", extra={"extra": {"key": key, "admin_id": str(admin_id)}})
    return stored


async def reset_config(
    key: str,
    admin_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> bool:
    """Drop the override so the environment value applies again. False if none was set."""
    if key not in _PARSERS:
        raise ValidationError(f"unknown config key: {key}", detail={"keys": list(CONFIG_KEYS)})

    async def work(session: AsyncSession) -> bool:
        row = await session.get(Setting, key)
        if row is None:
            return False
        previous = row.value
        await session.delete(row)
        await session.flush()
        await log_audit(
            session,
            actor=str(admin_id),
            action="config_reset",
            target_type="setting",
            target_id=key,
            meta={"previous": previous},
        )
        return True

    return await run_in_transaction(work, sessions=sessions, op="reset_config")

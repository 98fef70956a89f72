from __future__ import annotations

import pytest
import pytest_asyncio

from paydesk.config import settings
from paydesk.db.base import Base
from paydesk.db import models  # noqa: F401
from paydesk.db.session import build_engine, build_session_maker
from paydesk.services.membership import create_plan
from paydesk.services.orders import CoinProduct, MembershipProduct, create_order


@pytest_asyncio.fixture
async def sessions(tmp_path):
    # file DB: every unit of work gets its own connection, as in production
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'paydesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_maker(engine)
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def _quiet_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "telegram_bot_token", "")
    monkeypatch.setattr(settings, "log_chat_id", "")
    monkeypatch.setattr(settings, "approve_requires_paid", False)
    monkeypatch.setattr(settings, "db_retry_backoff", 0.01)


@pytest.fixture
def coin_order(sessions):
    async def _make(user_id: str = "u1", coins: int = 100, price: int = 1000):
        return await create_order(user_id, CoinProduct(coins), price, "alipay", sessions=sessions)

    return _make


@pytest.fixture
def vip_plan(sessions):
    async def _make(duration_days: int = 30, price: int = 2900, coin_price: int = 300, level: str = "vip"):
        return await create_plan(f"{level.upper()} {duration_days}d", level, duration_days, price, coin_price, sessions=sessions)

    return _make


@pytest.fixture
def membership_order(sessions):
    async def _make(user_id: str, plan):
        return await create_order(user_id, MembershipProduct(plan.id), plan.price, "wechat", sessions=sessions)

    return _make

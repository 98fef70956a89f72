from __future__ import annotations

from types import SimpleNamespace
from typing import Any, List, Optional

import pytest
from aiogram.filters import CommandObject

import paydesk.db.session as db_session
from paydesk.bot.handlers import admin_orders
from paydesk.config import settings
from paydesk.services import approval, ledger, orders
from paydesk.services.errors import PersistenceError
from paydesk.services.runtime_config import KEY_CHECKIN_STREAK_MAX

ADMIN = 42


class FakeMessage:
    def __init__(self, user_id: int = ADMIN, text: str = "") -> None:
        self.from_user = SimpleNamespace(id=user_id)
        self.text = text
        self.answers: List[str] = []
        self.markups: List[Any] = []
        self.edited: Optional[str] = None

    async def answer(self, text: str, reply_markup: Any = None, **kwargs: Any) -> None:
        self.answers.append(text)
        self.markups.append(reply_markup)

    async def edit_text(self, text: str, **kwargs: Any) -> None:
        self.edited = text


class FakeCallback:
    def __init__(self, data: str, user_id: int = ADMIN) -> None:
        self.from_user = SimpleNamespace(id=user_id)
        self.data = data
        self.message = FakeMessage(user_id, text="Order")
        self.answers: List[tuple] = []

    async def answer(self, text: Optional[str] = None, show_alert: bool = False, **kwargs: Any) -> None:
        self.answers.append((text, show_alert))


@pytest.fixture(autouse=True)
def _wire(sessions, monkeypatch: pytest.MonkeyPatch) -> None:
    # handlers use the process-wide session maker
    monkeypatch.setattr(db_session, "_SessionLocal", sessions)
    monkeypatch.setattr(settings, "telegram_admin_ids", [ADMIN])


@pytest.mark.asyncio
async def test_non_admin_is_turned_away(coin_order) -> None:
    order = await coin_order()
    msg = FakeMessage(user_id=7)
    await admin_orders.admin_orders_pending(msg)
    assert msg.answers == [admin_orders.NO_ACCESS]

    cb = FakeCallback(f"ord:approve:{order.id}", user_id=7)
    await admin_orders.cb_approve_order(cb)
    assert cb.answers == [(admin_orders.NO_ACCESS, True)]
    assert (await orders.get_order(order.id)).status == "pending"


@pytest.mark.asyncio
async def test_pending_list_shows_reviewable_orders(coin_order) -> None:
    msg = FakeMessage()
    await admin_orders.admin_orders_pending(msg)
    assert msg.answers == ["No orders waiting for review."]

    first = await coin_order("u1")
    await coin_order("u2")
    await orders.submit_payment_proof(first.id, "u1", note="sent")

    msg = FakeMessage()
    await admin_orders.admin_orders_pending(msg)
    assert len(msg.answers) == 3
    assert f"Order #{first.id}" in msg.answers[0]
    button = msg.markups[0].inline_keyboard[0][0]
    assert button.callback_data == f"ord:approve:{first.id}"
    assert msg.answers[-1].startswith("2 of 2 shown")


@pytest.mark.asyncio
async def test_approve_button_twice(coin_order) -> None:
    order = await coin_order("u1", 100, 1000)

    cb = FakeCallback(f"ord:approve:{order.id}")
    await admin_orders.cb_approve_order(cb)
    assert cb.answers == [("Approved", False)]
    assert "Approved ✅ | balance 100" in cb.message.edited

    again = FakeCallback(f"ord:approve:{order.id}")
    await admin_orders.cb_approve_order(again)
    assert again.answers == [("Already processed (approved)", True)]
    assert (await ledger.get_ledger_account("u1")).balance == 100


@pytest.mark.asyncio
async def test_approve_unknown_order() -> None:
    cb = FakeCallback("ord:approve:999")
    await admin_orders.cb_approve_order(cb)
    assert cb.answers == [("Order not found", True)]

    bad = FakeCallback("ord:approve:x")
    await admin_orders.cb_approve_order(bad)
    assert bad.answers == [("Invalid order id", True)]


@pytest.mark.asyncio
async def test_reject_command(coin_order) -> None:
    order = await coin_order()

    usage = FakeMessage()
    await admin_orders.admin_reject(usage, CommandObject(command="reject", args=str(order.id)))
    assert usage.answers == ["Usage: /reject <order_id> <reason>"]

    msg = FakeMessage()
    await admin_orders.admin_reject(msg, CommandObject(command="reject", args=f"{order.id} receipt is fake"))
    assert msg.answers == [f"Order #{order.id} rejected ❌\nReason: receipt is fake"]
    assert (await orders.get_order(order.id)).reject_reason == "receipt is fake"

    again = FakeMessage()
    await admin_orders.admin_reject(again, CommandObject(command="reject", args=f"{order.id} twice"))
    assert again.answers == [f"Order #{order.id} was already processed (rejected)."]


@pytest.mark.asyncio
async def test_adjust_command() -> None:
    msg = FakeMessage()
    await admin_orders.admin_adjust(msg, CommandObject(command="adjust", args="u5 250 goodwill credit"))
    assert msg.answers == ["Done. New balance of u5: 250 coins"]

    over = FakeMessage()
    await admin_orders.admin_adjust(over, CommandObject(command="adjust", args="u5 -300 clawback"))
    assert over.answers[0].startswith("⛔️ insufficient coin balance")

    bad = FakeMessage()
    await admin_orders.admin_adjust(bad, CommandObject(command="adjust", args="u5 lots note"))
    assert bad.answers == ["Amount must be an integer (negative to debit)."]


@pytest.mark.asyncio
async def test_stats_command(coin_order) -> None:
    order = await coin_order("u1", 100, 1000)
    cb = FakeCallback(f"ord:approve:{order.id}")
    await admin_orders.cb_approve_order(cb)

    msg = FakeMessage()
    await admin_orders.admin_stats(msg)
    text = msg.answers[0]
    assert "Earned: 100" in text
    assert "coin: approved=1" in text
    assert "Approved revenue: ¥10.00" in text


@pytest.mark.asyncio
async def test_numeric_payer_is_notified(coin_order, monkeypatch: pytest.MonkeyPatch) -> None:
    sent = []

    async def fake_notify(telegram_id: int, text: str) -> bool:
        sent.append((telegram_id, text))
        return True

    monkeypatch.setattr(admin_orders, "notify_user", fake_notify)
    paid_for = await coin_order("1001", 100, 1000)
    await admin_orders.cb_approve_order(FakeCallback(f"ord:approve:{paid_for.id}"))
    unpaid = await coin_order("web-user", 100, 1000)
    await admin_orders.admin_reject(FakeMessage(), CommandObject(command="reject", args=f"{unpaid.id} no transfer"))

    assert sent == [(1001, f"✅ Your order {paid_for.order_no} was approved | balance 100")]


@pytest.mark.asyncio
async def test_approve_unpaid_order_when_payment_is_required(coin_order, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "approve_requires_paid", True)
    order = await coin_order()

    cb = FakeCallback(f"ord:approve:{order.id}")
    await admin_orders.cb_approve_order(cb)
    assert cb.answers == [("Order is pending; approval needs a submitted payment", True)]
    assert (await orders.get_order(order.id)).status == "pending"


@pytest.mark.asyncio
async def test_commands_report_database_failures(coin_order, monkeypatch: pytest.MonkeyPatch) -> None:
    async def db_down(*args, **kwargs):
        raise PersistenceError("review failed after 3 attempts")

    monkeypatch.setattr(approval, "review", db_down)
    monkeypatch.setattr(ledger, "adjust_balance", db_down)
    order = await coin_order()

    reject = FakeMessage()
    await admin_orders.admin_reject(reject, CommandObject(command="reject", args=f"{order.id} fake receipt"))
    assert reject.answers == ["⛔️ review failed after 3 attempts"]

    adjust = FakeMessage()
    await admin_orders.admin_adjust(adjust, CommandObject(command="adjust", args="u5 10 goodwill"))
    assert adjust.answers == ["⛔️ review failed after 3 attempts"]


@pytest.mark.asyncio
async def test_adjust_command_with_several_users() -> None:
    await admin_orders.admin_adjust(FakeMessage(), CommandObject(command="adjust", args="u1 20 seed"))

    msg = FakeMessage()
    await admin_orders.admin_adjust(msg, CommandObject(command="adjust", args="u1,u2 30 raffle"))
    assert msg.answers == ["Done for 2 users:\nu1: 50 coins\nu2: 30 coins"]

    over = FakeMessage()
    await admin_orders.admin_adjust(over, CommandObject(command="adjust", args="u1,u2 -40 fee"))
    assert over.answers[0].startswith("⛔️ insufficient coin balance")
    assert (await ledger.get_ledger_account("u1")).balance == 50
    assert (await ledger.get_ledger_account("u2")).balance == 30


@pytest.mark.asyncio
async def test_config_commands() -> None:
    usage = FakeMessage()
    await admin_orders.admin_config(usage, CommandObject(command="config", args="checkin_streak_max"))
    assert usage.answers[0].startswith("Usage: /config <key> <value>")

    bad = FakeMessage()
    await admin_orders.admin_config(bad, CommandObject(command="config", args="checkin_streak_max 0"))
    assert bad.answers[0].startswith("⛔️ invalid value for CHECKIN_STREAK_MAX")

    ok = FakeMessage()
    await admin_orders.admin_config(ok, CommandObject(command="config", args="checkin_streak_max 5"))
    assert ok.answers == [f"{KEY_CHECKIN_STREAK_MAX} = 5"]

    reset = FakeMessage()
    await admin_orders.admin_config_reset(reset, CommandObject(command="config_reset", args="checkin_streak_max"))
    assert reset.answers == [f"{KEY_CHECKIN_STREAK_MAX} reset to the environment value."]

    again = FakeMessage()
    await admin_orders.admin_config_reset(again, CommandObject(command="config_reset", args="checkin_streak_max"))
    assert again.answers == [f"{KEY_CHECKIN_STREAK_MAX} had no override."]

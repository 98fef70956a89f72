from __future__ import annotations

import json

import pytest

from paydesk.db.order_store import OrderFilters
from paydesk.services import orders
from paydesk.services.errors import NotFound, ValidationError
from paydesk.services.orders import CoinProduct, MembershipProduct
from paydesk.services.runtime_config import KEY_RECHARGE_PACKAGES, set_override


@pytest.mark.asyncio
async def test_coin_order_matches_a_package(sessions) -> None:
    order = await orders.create_order("u1", CoinProduct(550), 4500, "wechat", sessions=sessions)
    assert order.status == "pending"
    assert order.kind == "coin"
    assert order.coin_amount == 550
    assert order.order_no.startswith("C")
    assert len(order.remark_code) == 4

    with pytest.raises(ValidationError):
        await orders.create_order("u2", CoinProduct(550), 4400, sessions=sessions)
    with pytest.raises(ValidationError):
        await orders.create_order("u2", CoinProduct(0), 0, sessions=sessions)
    with pytest.raises(ValidationError):
        await orders.create_order("u2", CoinProduct(100), 1000, "paypal", sessions=sessions)


@pytest.mark.asyncio
async def test_one_pending_coin_order_per_user(sessions, coin_order) -> None:
    await coin_order("u1")
    with pytest.raises(ValidationError):
        await coin_order("u1")
    await coin_order("u2")


@pytest.mark.asyncio
async def test_package_override_from_settings_table(sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            await set_override(session, KEY_RECHARGE_PACKAGES, json.dumps([{"coins": 42, "price": 4.2}]))

    order = await orders.create_order("u1", CoinProduct(42), 420, sessions=sessions)
    assert order.price == 420
    with pytest.raises(ValidationError):
        await orders.create_order("u2", CoinProduct(100), 1000, sessions=sessions)


@pytest.mark.asyncio
async def test_membership_order_freezes_plan_terms(sessions, vip_plan, membership_order) -> None:
    plan = await vip_plan(duration_days=90, price=7900)
    order = await membership_order("u1", plan)
    assert order.kind == "membership"
    assert order.member_level == "vip"
    assert order.duration_days == 90
    assert order.price == 7900
    assert order.order_no.startswith("M")

    with pytest.raises(ValidationError):
        await membership_order("u1", plan)
    with pytest.raises(ValidationError):
        await orders.create_order("u2", MembershipProduct(plan.id), 100, sessions=sessions)
    with pytest.raises(NotFound):
        await orders.create_order("u2", MembershipProduct(999), 100, sessions=sessions)


@pytest.mark.asyncio
async def test_submit_payment_proof_moves_pending_to_paid_once(sessions, coin_order) -> None:
    order = await coin_order("u1")

    with pytest.raises(NotFound):
        await orders.submit_payment_proof(order.id, "someone-else", sessions=sessions)

    first = await orders.submit_payment_proof(order.id, "u1", "photo-1", "10:32 transfer", sessions=sessions)
    assert first.accepted is True
    assert first.order.status == "paid"
    assert first.order.payment_screenshot == "photo-1"

    second = await orders.submit_payment_proof(order.id, "u1", "photo-2", sessions=sessions)
    assert second.accepted is False
    assert second.order.payment_screenshot == "photo-1"


@pytest.mark.asyncio
async def test_lookup_and_listing(sessions, coin_order) -> None:
    a = await coin_order("u1")
    b = await coin_order("u2")
    await orders.submit_payment_proof(b.id, "u2", sessions=sessions)

    assert (await orders.get_order_by_no(a.order_no, sessions=sessions)).id == a.id
    assert await orders.get_order(12345, sessions=sessions) is None

    page = await orders.list_orders(OrderFilters(status=["pending", "paid"]), sort_order="asc", sessions=sessions)
    assert [o.id for o in page.items] == [a.id, b.id]
    paid = await orders.list_orders(OrderFilters(status="paid"), sessions=sessions)
    assert [o.id for o in paid.items] == [b.id]
    mine = await orders.list_orders(OrderFilters(user_id="u1", kind="coin"), sessions=sessions)
    assert mine.total == 1

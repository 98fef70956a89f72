from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.db.base import Page
from paydesk.db.membership_store import MembershipStore
from paydesk.db.models import (
    LEVEL_FREE,
    ORDER_KIND_COIN,
    ORDER_KIND_MEMBERSHIP,
    ORDER_PAID,
    ORDER_PENDING,
    PAYMENT_TYPES,
    Order,
)
from paydesk.db.order_store import OrderFilters, OrderStore
from paydesk.db.session import run_in_transaction, session_scope
from paydesk.services.errors import Duplicate, NotFound, ValidationError
from paydesk.services.runtime_config import load_recharge_packages
from paydesk.utils.codes import generate_order_no, generate_remark_code

logger = logging.getLogger(__name__)

# order_no collisions need the same millisecond and the same 6 random chars
_ORDER_NO_ATTEMPTS = 3


@dataclass(frozen=True)
class CoinProduct:
    coins: int


@dataclass(frozen=True)
class MembershipProduct:
    plan_id: int


Product = Union[CoinProduct, MembershipProduct]


@dataclass
class ProofResult:
    accepted: bool
    order: Order


async def _build_coin_order(session: AsyncSession, user_id: str, product: CoinProduct, price: int) -> Order:
    if product.coins <= 0 or price <= 0:
        raise ValidationError("coin amount and price must be positive")
    packages = await load_recharge_packages(session)
    if not any(p.total_coins == product.coins and p.price_cents == price for p in packages):
        logger.warning(
            "recharge package mismatch",
            extra={"extra": {"coins": product.coins, "price": price}},
        )
        raise ValidationError("no recharge package matches this amount and price")
    if await OrderStore(session).has_pending(user_id, ORDER_KIND_COIN):
        raise ValidationError("a pending coin order already exists for this user")
    return Order(
        order_no=generate_order_no("C"),
        user_id=user_id,
        kind=ORDER_KIND_COIN,
        coin_amount=product.coins,
        price=price,
    )


async def _build_membership_order(
    session: AsyncSession, user_id: str, product: MembershipProduct, price: int
) -> Order:
    plan = await MembershipStore(session).get_plan(product.plan_id)
    if plan is None:
        raise NotFound("MembershipPlan", product.plan_id)
    if not plan.enabled or plan.member_level == LEVEL_FREE:
        raise ValidationError("membership plan is not available", detail={"plan_id": plan.id})
    if price != plan.price:
        raise ValidationError("price does not match the plan", detail={"plan_id": plan.id, "price": plan.price})
    if await OrderStore(session).has_pending(user_id, ORDER_KIND_MEMBERSHIP, plan.id):
        raise ValidationError("a pending order for this plan already exists")
    # plan terms are frozen on the order
    return Order(
        order_no=generate_order_no("M"),
        user_id=user_id,
        kind=ORDER_KIND_MEMBERSHIP,
        plan_id=plan.id,
        member_level=plan.member_level,
        duration_days=plan.duration_days,
        price=plan.price,
    )


async def create_order(
    user_id: str,
    product: Product,
    price: int,
    payment_type: Optional[str] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Order:
    """Open a ``pending`` payment claim for coins or a membership plan."""
    if not user_id:
        raise ValidationError("user_id is required")
    if payment_type is not None and payment_type not in PAYMENT_TYPES:
        raise ValidationError(f"unsupported payment type: {payment_type}")

    async def work(session: AsyncSession) -> Order:
        if isinstance(product, CoinProduct):
            order = await _build_coin_order(session, user_id, product, price)
        elif isinstance(product, MembershipProduct):
            order = await _build_membership_order(session, user_id, product, price)
        else:
            raise ValidationError("unknown product")
        order.payment_type = payment_type
        order.remark_code = generate_remark_code()
        return await OrderStore(session).create(order)

    for attempt in range(1, _ORDER_NO_ATTEMPTS + 1):
        try:
            order = await run_in_transaction(work, sessions=sessions, op="create_order")
            break
        except Duplicate:
            if attempt == _ORDER_NO_ATTEMPTS:
                raise
            logger.warning("order_no collision, regenerating", extra={"extra": {"attempt": attempt}})
    logger.info(
        "order created",
        extra={"extra": {"order_id": order.id, "order_no": order.order_no, "user_id": user_id, "kind": order.kind}},
    )
    return order


async def submit_payment_proof(
    order_id: int,
    user_id: str,
    screenshot: Optional[str] = None,
    note: Optional[str] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ProofResult:
    """Payer marks a claim as paid. Only ``pending`` orders move."""

    async def work(session: AsyncSession) -> ProofResult:
        store = OrderStore(session)
        order = await store.find_by_id(order_id)
        # someone else's order is reported as missing
        if order is None or order.user_id != user_id:
            raise NotFound("Order", order_id)
        res = await store.transition(
            order_id,
            [ORDER_PENDING],
            ORDER_PAID,
            payment_screenshot=screenshot,
            transaction_note=note,
        )
        if not res.changed:
            return ProofResult(accepted=False, order=await store.find_by_id(order_id))
        return ProofResult(accepted=True, order=res.order)

    return await run_in_transaction(work, sessions=sessions, op="submit_payment_proof")


async def get_order(
    order_id: int,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Optional[Order]:
    async with session_scope(sessions) as session:
        return await OrderStore(session).find_by_id(order_id)


async def get_order_by_no(
    order_no: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Optional[Order]:
    async with session_scope(sessions) as session:
        return await OrderStore(session).find_by_order_no(order_no)


async def list_orders(
    filters: Optional[OrderFilters] = None,
    page: int = 1,
    page_size: int = 20,
    *,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Page[Order]:
    async with session_scope(sessions) as session:
        return await OrderStore(session).list(
            filters, page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order
        )

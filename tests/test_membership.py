from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import literal, select

import paydesk.db.membership_store as membership_store_module
from paydesk.db.membership_store import MembershipStore
from paydesk.services import ledger, membership
from paydesk.services.errors import InsufficientBalance, InvariantViolation, NotFound, ValidationError
from paydesk.services.membership import calculate_new_expiry, effective_level
from paydesk.utils.time import db_now

NOW = datetime(2026, 3, 1, 12, 0, 0)


def test_expiry_stacks_only_on_active_membership() -> None:
    active = NOW + timedelta(days=5)
    assert calculate_new_expiry("vip", active, 30, NOW) == active + timedelta(days=30)
    assert calculate_new_expiry("vip", NOW - timedelta(days=1), 30, NOW) == NOW + timedelta(days=30)
    assert calculate_new_expiry("free", None, 7, NOW) == NOW + timedelta(days=7)


def test_effective_level_drops_to_free_after_expiry() -> None:
    assert effective_level("svip", NOW + timedelta(seconds=1), NOW) == "svip"
    assert effective_level("svip", NOW - timedelta(seconds=1), NOW) == "free"
    assert effective_level("vip", None, NOW) == "free"


@pytest.mark.asyncio
async def test_plans_crud(sessions, vip_plan) -> None:
    a = await vip_plan(30)
    await membership.create_plan("Hidden", "svip", 30, 9900, 0, enabled=False, sessions=sessions)
    assert [p.id for p in await membership.list_plans(sessions=sessions)] == [a.id]
    assert len(await membership.list_plans(False, sessions=sessions)) == 2
    assert (await membership.get_plan(a.id, sessions=sessions)).coin_price == 300

    with pytest.raises(ValidationError):
        await membership.create_plan("Free", "free", 30, 0, 0, sessions=sessions)
    with pytest.raises(ValidationError):
        await membership.create_plan("Bad", "vip", 0, 100, 10, sessions=sessions)


@pytest.mark.asyncio
async def test_status_for_unknown_user_is_free(sessions) -> None:
    status = await membership.get_membership_status("nobody", sessions=sessions)
    assert status.member_level == "free"
    assert status.is_active is False
    assert status.days_remaining == 0


@pytest.mark.asyncio
async def test_exchange_debits_and_grants_atomically(sessions, vip_plan) -> None:
    plan = await vip_plan(30, coin_price=300)
    await ledger.adjust_balance("u1", 500, "seed", "admin1", sessions=sessions)

    result = await membership.exchange_coins_for_membership("u1", plan.id, sessions=sessions)
    assert result.coins_spent == 300
    assert result.balance == 200
    assert result.activation.new_level == "vip"

    entries = await ledger.list_ledger_entries("u1", "exchange", sessions=sessions)
    assert entries.items[0].amount == -300
    assert entries.items[0].meta["plan_id"] == plan.id

    # not enough left for a second one: neither side changes
    with pytest.raises(InsufficientBalance):
        await membership.exchange_coins_for_membership("u1", plan.id, sessions=sessions)
    status = await membership.get_membership_status("u1", sessions=sessions)
    assert status.expires_at == result.activation.new_expiry
    assert (await ledger.get_ledger_account("u1", sessions=sessions)).balance == 200


@pytest.mark.asyncio
async def test_exchange_rejects_unbuyable_plans(sessions, vip_plan) -> None:
    free_coins = await vip_plan(30, coin_price=0)
    with pytest.raises(ValidationError):
        await membership.exchange_coins_for_membership("u1", free_coins.id, sessions=sessions)
    with pytest.raises(NotFound):
        await membership.exchange_coins_for_membership("u1", 404, sessions=sessions)


@pytest.mark.asyncio
async def test_admin_adjust_sets_state_and_logs(sessions) -> None:
    until = db_now().replace(microsecond=0) + timedelta(days=10)
    res = await membership.adjust_membership("u1", "admin1", "svip", until, "vip support case", sessions=sessions)
    assert res.previous_level == "free"
    assert res.new_level == "svip"

    status = await membership.get_membership_status("u1", sessions=sessions)
    assert status.member_level == "svip"
    assert status.expires_at == until

    down = await membership.adjust_membership("u1", "admin1", "free", None, "refund", sessions=sessions)
    assert down.previous_level == "svip"
    assert (await membership.get_membership_status("u1", sessions=sessions)).is_active is False

    async with sessions() as session:
        logs = await MembershipStore(session).list_adjust_logs("u1")
    assert [log.reason for log in logs] == ["refund", "vip support case"]

    with pytest.raises(ValidationError):
        await membership.adjust_membership("u1", "admin1", "vip", None, "no expiry", sessions=sessions)
    with pytest.raises(ValidationError):
        await membership.adjust_membership("u1", "admin1", "vip", until, "", sessions=sessions)


@pytest.mark.asyncio
async def test_missing_row_after_upsert_is_an_invariant_violation(sessions, monkeypatch: pytest.MonkeyPatch) -> None:
    # an upsert that writes nothing stands in for a broken unique index
    monkeypatch.setattr(membership_store_module, "insert_ignore", lambda *args, **kwargs: select(literal(1)))
    async with sessions() as session:
        async with session.begin():
            with pytest.raises(InvariantViolation) as exc:
                await MembershipStore(session).get_or_create_for_update("ghost")
    assert exc.value.detail == {"user_id": "ghost"}

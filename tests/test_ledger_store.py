from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from paydesk.db.ledger_store import LedgerStore


@pytest.mark.asyncio
async def test_account_is_created_once(sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            store = LedgerStore(session)
            first = await store.get_or_create_account("u1")
            second = await store.get_or_create_account("u1")
    assert first.id == second.id
    assert (first.balance, first.total_earned, first.total_spent) == (0, 0, 0)


@pytest.mark.asyncio
async def test_apply_delta_guards_debits(sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            store = LedgerStore(session)
            assert await store.apply_delta("ghost", 10) is None
            await store.get_or_create_account("u1")
            assert await store.apply_delta("u1", 50) == 50
            assert await store.apply_delta("u1", -20) == 30
            assert await store.apply_delta("u1", -31) is None
            with pytest.raises(ValueError):
                await store.apply_delta("u1", 0)

    async with sessions() as session:
        account = await LedgerStore(session).get_account("u1")
    assert (account.balance, account.total_earned, account.total_spent) == (30, 50, 20)


@pytest.mark.asyncio
async def test_negative_balance_is_refused_by_the_database(sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            await LedgerStore(session).get_or_create_account("u1")

    async with sessions() as session:
        with pytest.raises(IntegrityError):
            async with session.begin():
                await session.execute(
                    text("UPDATE ledger_accounts SET balance = -1, total_spent = 1 WHERE user_id = 'u1'")
                )


@pytest.mark.asyncio
async def test_entries_listing_and_mismatch_scan(sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            store = LedgerStore(session)
            await store.get_or_create_account("u1")
            balance = await store.apply_delta("u1", 40)
            await store.append_entry("u1", "recharge", 40, balance, "first", {"order_id": 1})
            balance = await store.apply_delta("u1", -15)
            await store.append_entry("u1", "consume", -15, balance, "spend")

    async with sessions() as session:
        store = LedgerStore(session)
        assert await store.sum_entries("u1") == 25
        assert await store.find_mismatches() == []

        page = await store.list_entries("u1", page=1, page_size=1)
        assert page.total == 2
        assert page.items[0].type == "consume"
        assert page.items[0].balance_after == 25
        only_recharge = await store.list_entries(type="recharge")
        assert [e.meta for e in only_recharge.items] == [{"order_id": 1}]

    async with sessions() as session:
        async with session.begin():
            # account without entries yet with a balance
            await session.execute(
                text(
                    "INSERT INTO ledger_accounts (user_id, balance, total_earned, total_spent, created_at, updated_at) "
                    "VALUES ('u2', 9, 9, 0, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)"
                )
            )

    async with sessions() as session:
        found = await LedgerStore(session).find_mismatches()
    assert [m.as_dict() for m in found] == [
        {"user_id": "u2", "balance": 9, "total_earned": 9, "total_spent": 0, "entries_sum": 0}
    ]

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.config import settings
from paydesk.db.base import Page
from paydesk.db.ledger_store import LedgerStore, Mismatch
from paydesk.db.models import ENTRY_ADJUST, ENTRY_CONSUME, ENTRY_TYPES, LedgerAccount, LedgerEntry
from paydesk.db.session import run_in_transaction, session_scope
from paydesk.services.audit import log_audit
from paydesk.services.errors import InsufficientBalance, InvariantViolation, ValidationError
from paydesk.services.notifications import alert_invariant

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_ledger_unit(
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
    op: str,
) -> T:
    """``run_in_transaction`` for work that touches balances.

    An ``InvariantViolation`` raised inside rolls the unit back, is logged and
    alerted, then propagates to the caller.
    """
    try:
        return await run_in_transaction(work, sessions=sessions, op=op)
    except InvariantViolation as e:
        await alert_invariant(e, op=op)
        raise


async def credit(
    session: AsyncSession,
    user_id: str,
    amount: int,
    entry_type: str,
    description: str = "",
    meta: Optional[dict[str, Any]] = None,
) -> int:
    """Credit ``amount`` coins and append the matching entry. Returns the new balance."""
    if amount <= 0:
        raise ValidationError("credit amount must be positive")
    store = LedgerStore(session)
    await store.get_or_create_account(user_id)
    new_balance = await store.apply_delta(user_id, amount)
    if new_balance is None:
        raise InvariantViolation("credit matched no ledger account", detail={"user_id": user_id})
    if new_balance > settings.max_balance:
        # raising aborts the surrounding unit of work, so the credit never lands
        raise ValidationError(
            "balance would exceed the allowed maximum",
            detail={"user_id": user_id, "max_balance": settings.max_balance},
        )
    await store.append_entry(user_id, entry_type, amount, new_balance, description, meta)
    return new_balance


async def debit(
    session: AsyncSession,
    user_id: str,
    amount: int,
    entry_type: str,
    description: str = "",
    meta: Optional[dict[str, Any]] = None,
) -> int:
    """Debit ``amount`` coins only if the balance covers it. Returns the new balance."""
    if amount <= 0:
        raise ValidationError("debit amount must be positive")
    store = LedgerStore(session)
    new_balance = await store.apply_delta(user_id, -amount)
    if new_balance is None:
        account = await store.get_account(user_id)
        raise InsufficientBalance(user_id, amount, account.balance if account else 0)
    await store.append_entry(user_id, entry_type, -amount, new_balance, description, meta)
    return new_balance


async def adjust_balance(
    user_id: str,
    amount: int,
    note: str,
    admin_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    """Manual correction by an administrator. Negative amounts debit."""
    if not user_id:
        raise ValidationError("user_id is required")
    if not amount:
        raise ValidationError("amount must be non-zero")
    note = (note or "").strip()
    if not note:
        raise ValidationError("a note is required for manual adjustments")

    async def work(session: AsyncSession) -> int:
        meta = {"admin_id": str(admin_id)}
        if amount > 0:
            new_balance = await credit(session, user_id, amount, ENTRY_ADJUST, note, meta)
        else:
            new_balance = await debit(session, user_id, -amount, ENTRY_ADJUST, note, meta)
        await log_audit(
            session,
            actor=str(admin_id),
            action="balance_adjusted",
            target_type="ledger_account",
            target_id=user_id,
            meta={"amount": amount, "note": note, "balance_after": new_balance},
        )
        return new_balance

    new_balance = await run_ledger_unit(work, sessions=sessions, op="adjust_balance")
    logger.info(
        "balance adjusted",
        extra={"extra": {"user_id": user_id, "amount": amount, "admin_id": str(admin_id), "balance": new_balance}},
    )
    return new_balance


async def batch_adjust(
    user_ids: Sequence[str],
    amount: int,
    note: str,
    admin_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Dict[str, int]:
    """Apply the same adjustment to several users in one unit of work.

    Either every user is adjusted or none is: one debit that the balance
    cannot cover rolls the whole batch back with ``InsufficientBalance``.
    Returns the new balance per user id.
    """
    targets = list(dict.fromkeys(u for u in user_ids if u))
    if not targets:
        return {}
    if not amount:
        raise ValidationError("amount must be non-zero")
    note = (note or "").strip()
    if not note:
        raise ValidationError("a note is required for manual adjustments")

    async def work(session: AsyncSession) -> Dict[str, int]:
        meta = {"admin_id": str(admin_id), "batch": True}
        balances: Dict[str, int] = {}
        for user_id in targets:
            if amount > 0:
                balances[user_id] = await credit(session, user_id, amount, ENTRY_ADJUST, note, meta)
            else:
                balances[user_id] = await debit(session, user_id, -amount, ENTRY_ADJUST, note, meta)
        await log_audit(
            session,
            actor=str(admin_id),
            action="balance_batch_adjusted",
            target_type="ledger_account",
            meta={"user_ids": targets, "amount": amount, "note": note},
        )
        return balances

    balances = await run_ledger_unit(work, sessions=sessions, op="batch_adjust")
    logger.info(
        "batch balance adjustment",
        extra={"extra": {"users": len(balances), "amount": amount, "admin_id": str(admin_id)}},
    )
    return balances


async def spend_coins(
    user_id: str,
    amount: int,
    entry_type: str = ENTRY_CONSUME,
    description: str = "",
    meta: Optional[dict[str, Any]] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(f"unknown entry type: {entry_type}")

    async def work(session: AsyncSession) -> int:
        return await debit(session, user_id, amount, entry_type, description, meta)

    return await run_ledger_unit(work, sessions=sessions, op="spend_coins")


async def get_ledger_account(
    user_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Optional[LedgerAccount]:
    async with session_scope(sessions) as session:
        return await LedgerStore(session).get_account(user_id)


async def list_ledger_entries(
    user_id: Optional[str] = None,
    entry_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    page: int = 1,
    page_size: int = 20,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Page[LedgerEntry]:
    async with session_scope(sessions) as session:
        return await LedgerStore(session).list_entries(
            user_id, entry_type, start, end, page=page, page_size=page_size
        )


async def reconcile_user(
    user_id: str,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> None:
    """Raise ``InvariantViolation`` when the account disagrees with its entries."""
    async with session_scope(sessions) as session:
        found = await LedgerStore(session).find_mismatches(user_id)
    if found:
        exc = InvariantViolation("ledger reconciliation mismatch", detail=found[0].as_dict())
        await alert_invariant(exc, op="reconcile_user")
        raise exc


async def reconcile_all(
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> List[Mismatch]:
    """Check every account; each mismatch is logged at ERROR and alerted."""
    async with session_scope(sessions) as session:
        found = await LedgerStore(session).find_mismatches()
    for m in found:
        await alert_invariant(
            InvariantViolation("ledger reconciliation mismatch", detail=m.as_dict()),
            op="reconcile_all",
        )
    if not found:
        logger.info("ledger reconciliation clean")
    return found

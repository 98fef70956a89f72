from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paydesk.db.base import Page, insert_ignore
from paydesk.db.models import LedgerAccount, LedgerEntry
from paydesk.services.errors import InvariantViolation
from paydesk.utils.time import db_now

logger = logging.getLogger(__name__)


@dataclass
class Mismatch:
    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    entries_sum: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": self.balance,
            "total_earned": self.total_earned,
            "total_spent": self.total_spent,
            "entries_sum": self.entries_sum,
        }


class LedgerStore:
    """Balance rows and the append-only entry log.

    Balances are only ever changed with SQL arithmetic evaluated by the
    database, never by read-modify-write in Python.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_or_create_account(self, user_id: str) -> LedgerAccount:
        values = dict(user_id=user_id, balance=0, total_earned=0, total_spent=0, created_at=db_now(), updated_at=db_now())
        dialect = self.session.get_bind().dialect.name
        await self.session.execute(insert_ignore(dialect, LedgerAccount, values, ["user_id"]))
        account = await self.get_account(user_id)
        if account is None:
            # the insert was ignored yet no row is visible: broken unique index
            raise InvariantViolation("ledger account missing after upsert", detail={"user_id": user_id})
        return account

    async def get_account(self, user_id: str) -> Optional[LedgerAccount]:
        return await self.session.scalar(
            select(LedgerAccount)
            .where(LedgerAccount.user_id == user_id)
            .execution_options(populate_existing=True)
        )

    async def apply_delta(self, user_id: str, amount: int) -> Optional[int]:
        """Add ``amount`` (signed) to the user's balance.

        Credits also grow ``total_earned``; debits grow ``total_spent`` and only
        apply while ``balance >= -amount``. Returns the balance after the
        update, or None when no row matched (missing account or insufficient
        funds for a debit).
        """
        if amount == 0:
            raise ValueError("amount must be non-zero")
        stmt = update(LedgerAccount).where(LedgerAccount.user_id == user_id)
        if amount > 0:
            stmt = stmt.values(
                balance=LedgerAccount.balance + amount,
                total_earned=LedgerAccount.total_earned + amount,
                updated_at=db_now(),
            )
        else:
            debit = -amount
            stmt = stmt.where(LedgerAccount.balance >= debit).values(
                balance=LedgerAccount.balance - debit,
                total_spent=LedgerAccount.total_spent + debit,
                updated_at=db_now(),
            )
        try:
            res = await self.session.execute(stmt.execution_options(synchronize_session=False))
        except IntegrityError as e:
            logger.error(
                "ledger check constraint failed",
                extra={"extra": {"user_id": user_id, "amount": amount, "error": str(e.orig)}},
            )
            raise InvariantViolation(
                "ledger constraint violated", detail={"user_id": user_id, "amount": amount}
            ) from e
        if (res.rowcount or 0) == 0:
            return None
        # Read back inside the same transaction
        new_balance = await self.session.scalar(
            select(LedgerAccount.balance).where(LedgerAccount.user_id == user_id)
        )
        return int(new_balance)

    async def append_entry(
        self,
        user_id: str,
        type: str,
        amount: int,
        balance_after: int,
        description: str = "",
        meta: Optional[dict[str, Any]] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            type=type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            meta=meta or {},
            created_at=db_now(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_entries(
        self,
        user_id: Optional[str] = None,
        type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[LedgerEntry]:
        conditions = []
        if user_id:
            conditions.append(LedgerEntry.user_id == user_id)
        if type:
            conditions.append(LedgerEntry.type == type)
        if start is not None:
            conditions.append(LedgerEntry.created_at >= start)
        if end is not None:
            conditions.append(LedgerEntry.created_at < end)
        page = max(1, page)
        total = await self.session.scalar(select(func.count(LedgerEntry.id)).where(*conditions))
        rows = (
            await self.session.execute(
                select(LedgerEntry)
                .where(*conditions)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        ).scalars().all()
        return Page(items=list(rows), page=page, page_size=page_size, total=int(total or 0))

    async def sum_entries(self, user_id: str) -> int:
        total = await self.session.scalar(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.user_id == user_id)
        )
        return int(total or 0)

    async def find_mismatches(self, user_id: Optional[str] = None) -> List[Mismatch]:
        sums = (
            select(LedgerEntry.user_id.label("user_id"), func.sum(LedgerEntry.amount).label("total"))
            .group_by(LedgerEntry.user_id)
            .subquery()
        )
        entries_sum = func.coalesce(sums.c.total, 0)
        stmt = (
            select(
                LedgerAccount.user_id,
                LedgerAccount.balance,
                LedgerAccount.total_earned,
                LedgerAccount.total_spent,
                entries_sum.label("entries_sum"),
            )
            .select_from(LedgerAccount)
            .outerjoin(sums, sums.c.user_id == LedgerAccount.user_id)
            .where(
                (LedgerAccount.balance != entries_sum)
                | (LedgerAccount.balance != LedgerAccount.total_earned - LedgerAccount.total_spent)
            )
            .order_by(LedgerAccount.user_id)
        )
        if user_id is not None:
            stmt = stmt.where(LedgerAccount.user_id == user_id)
        rows = (await self.session.execute(stmt)).all()
        return [
            Mismatch(
                user_id=r.user_id,
                balance=int(r.balance),
                total_earned=int(r.total_earned),
                total_spent=int(r.total_spent),
                entries_sum=int(r.entries_sum),
            )
            for r in rows
        ]

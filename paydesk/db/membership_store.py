from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paydesk.db.base import insert_ignore
from paydesk.db.models import LEVEL_FREE, Membership, MembershipAdjustLog, MembershipPlan
from paydesk.services.errors import InvariantViolation
from paydesk.utils.time import db_now


class MembershipStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Plans

    async def add_plan(self, plan: MembershipPlan) -> MembershipPlan:
        self.session.add(plan)
        await self.session.flush()
        return plan

    async def get_plan(self, plan_id: int) -> Optional[MembershipPlan]:
        return await self.session.get(MembershipPlan, plan_id)

    async def list_plans(self, enabled_only: bool = True) -> List[MembershipPlan]:
        stmt = select(MembershipPlan)
        if enabled_only:
            stmt = stmt.where(MembershipPlan.enabled.is_(True))
        stmt = stmt.order_by(MembershipPlan.sort_order, MembershipPlan.id)
        return list((await self.session.execute(stmt)).scalars().all())

    # Membership state

    async def get(self, user_id: str) -> Optional[Membership]:
        return await self.session.scalar(
            select(Membership).where(Membership.user_id == user_id).execution_options(populate_existing=True)
        )

    async def get_or_create_for_update(self, user_id: str) -> Membership:
        """Return the user's membership row, locked for the rest of the transaction.

        The row is created on first touch the same way ledger accounts are, so
        two concurrent grants never race on the insert.
        """
        values = dict(user_id=user_id, member_level=LEVEL_FREE, expires_at=None, updated_at=db_now())
        dialect = self.session.get_bind().dialect.name
        await self.session.execute(insert_ignore(dialect, Membership, values, ["user_id"]))
        # FOR UPDATE is a no-op on SQLite, whose writers are serialised anyway
        row = await self.session.scalar(
            select(Membership)
            .where(Membership.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if row is None:
            # the insert was ignored yet no row is visible: broken unique index
            raise InvariantViolation("membership row missing after upsert", detail={"user_id": user_id})
        return row

    async def set_state(self, membership: Membership, level: str, expires_at: Optional[datetime]) -> Membership:
        membership.member_level = level
        membership.expires_at = expires_at
        membership.updated_at = db_now()
        await self.session.flush()
        return membership

    async def add_adjust_log(
        self,
        *,
        user_id: str,
        admin_id: str,
        previous_level: str,
        new_level: str,
        previous_expiry: Optional[datetime],
        new_expiry: Optional[datetime],
        reason: str,
    ) -> MembershipAdjustLog:
        log = MembershipAdjustLog(
            user_id=user_id,
            admin_id=admin_id,
            previous_level=previous_level,
            new_level=new_level,
            previous_expiry=previous_expiry,
            new_expiry=new_expiry,
            reason=reason,
            created_at=db_now(),
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def list_adjust_logs(self, user_id: str) -> List[MembershipAdjustLog]:
        rows = await self.session.execute(
            select(MembershipAdjustLog)
            .where(MembershipAdjustLog.user_id == user_id)
            .order_by(MembershipAdjustLog.created_at.desc(), MembershipAdjustLog.id.desc())
        )
        return list(rows.scalars().all())

from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paydesk.db.models import CheckinRecord
from paydesk.services.errors import Duplicate
from paydesk.utils.time import db_now


class CheckinStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find(self, user_id: str, day: date) -> Optional[CheckinRecord]:
        return await self.session.scalar(
            select(CheckinRecord).where(CheckinRecord.user_id == user_id, CheckinRecord.checkin_date == day)
        )

    async def insert(self, user_id: str, day: date, streak_count: int, coins_earned: int) -> CheckinRecord:
        """Insert today's record; the (user_id, checkin_date) unique key decides races."""
        record = CheckinRecord(
            user_id=user_id,
            checkin_date=day,
            streak_count=streak_count,
            coins_earned=coins_earned,
            created_at=db_now(),
        )
        self.session.add(record)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise Duplicate("CheckinRecord", "checkin_date") from e
        return record


    async def latest(self, user_id: str) -> Optional[CheckinRecord]:
        return await self.session.scalar(
            select(CheckinRecord)
            .where(CheckinRecord.user_id == user_id)
            .order_by(CheckinRecord.checkin_date.desc())
            .limit(1)
        )

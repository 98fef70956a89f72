from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paydesk.db.base import Page
from paydesk.db.models import ORDER_PENDING, ORDER_STATUSES, Order
from paydesk.services.errors import Duplicate, ValidationError
from paydesk.utils.time import db_now

_SORTABLE = {"created_at": Order.created_at, "updated_at": Order.updated_at}


def _is_order_no_conflict(exc: IntegrityError) -> bool:
    # SQLite names the column, MySQL names the key
    msg = str(exc.orig)
    return "uq_orders_order_no" in msg or "orders.order_no" in msg


@dataclass
class OrderFilters:
    user_id: Optional[str] = None
    status: Optional[str | Sequence[str]] = None
    kind: Optional[str] = None
    order_no: Optional[str] = None
    statuses: List[str] = field(init=False, default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.status, str):
            self.statuses = [self.status]
        elif self.status:
            self.statuses = list(self.status)


@dataclass
class TransitionResult:
    """Outcome of a conditional status update.

    ``changed`` is True only when this call moved the row; ``order`` is the
    row as it stands after the update (None when nothing changed).
    """

    changed: bool
    order: Optional[Order] = None


class OrderStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, order: Order) -> Order:
        order.status = ORDER_PENDING
        self.session.add(order)
        try:
            await self.session.flush()
        except IntegrityError as e:
            if _is_order_no_conflict(e):
                raise Duplicate("Order", "order_no") from e
            raise
        return order

    async def transition(
        self,
        order_id: int,
        allowed_from: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> TransitionResult:
        """Compare-and-swap on ``status``.

        Issues a single ``UPDATE ... WHERE id = :id AND status IN (:allowed)``;
        the database evaluates the predicate and applies the change in one
        statement, so concurrent callers see exactly one winner. No row lock
        is taken beyond what the UPDATE itself holds.
        """
        allowed = list(allowed_from)
        if not allowed:
            raise ValueError("allowed_from must not be empty")
        if "status" in fields:
            raise ValueError("status is set through to_status")
        res = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(allowed))
            .values(status=to_status, updated_at=db_now(), **fields)
            .execution_options(synchronize_session=False)
        )
        if (res.rowcount or 0) == 0:
            return TransitionResult(changed=False)
        order = await self.session.scalar(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        return TransitionResult(changed=True, order=order)

    async def find_by_id(self, order_id: int) -> Optional[Order]:
        return await self.session.scalar(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )

    async def find_by_order_no(self, order_no: str) -> Optional[Order]:
        return await self.session.scalar(select(Order).where(Order.order_no == order_no))

    async def has_pending(self, user_id: str, kind: str, plan_id: Optional[int] = None) -> bool:
        stmt = select(Order.id).where(
            Order.user_id == user_id,
            Order.kind == kind,
            Order.status == ORDER_PENDING,
        )
        if plan_id is not None:
            stmt = stmt.where(Order.plan_id == plan_id)
        return (await self.session.scalar(stmt.limit(1))) is not None

    async def list(
        self,
        filters: Optional[OrderFilters] = None,
        *,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Page[Order]:
        filters = filters or OrderFilters()
        if page < 1:
            page = 1
        if page_size < 1:
            raise ValidationError("page_size must be positive")
        unknown = set(filters.statuses) - set(ORDER_STATUSES)
        if unknown:
            raise ValidationError(f"unknown order status: {', '.join(sorted(unknown))}")
        sort_col = _SORTABLE.get(sort_by, Order.created_at)
        conditions = []
        if filters.user_id:
            conditions.append(Order.user_id == filters.user_id)
        if filters.statuses:
            conditions.append(Order.status.in_(filters.statuses))
        if filters.kind:
            conditions.append(Order.kind == filters.kind)
        if filters.order_no:
            conditions.append(Order.order_no == filters.order_no)

        total = await self.session.scalar(select(func.count(Order.id)).where(*conditions))
        if sort_order == "asc":
            ordering = (sort_col.asc(), Order.id.asc())
        else:
            ordering = (sort_col.desc(), Order.id.desc())
        rows = (
            await self.session.execute(
                select(Order)
                .where(*conditions)
                .order_by(*ordering)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        ).scalars().all()
        return Page(items=list(rows), page=page, page_size=page_size, total=int(total or 0))

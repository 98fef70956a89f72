from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paydesk.config import settings
from paydesk.db.models import (
    ENTRY_RECHARGE,
    ORDER_APPROVED,
    ORDER_KIND_COIN,
    ORDER_KIND_MEMBERSHIP,
    ORDER_PAID,
    ORDER_REJECTED,
    REVIEWABLE_STATUSES,
    Order,
)
from paydesk.db.order_store import OrderStore
from paydesk.services.audit import log_audit
from paydesk.services.errors import InvariantViolation, NotFound, ValidationError
from paydesk.services.ledger import credit, run_ledger_unit
from paydesk.services.membership import activate_membership
from paydesk.utils.correlation import correlation_scope
from paydesk.utils.time import db_now

logger = logging.getLogger(__name__)


class ReviewAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ReviewOutcome(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    ALREADY_PROCESSED = "already_processed"
    # still pending while approval needs a submitted payment
    NOT_REVIEWABLE = "not_reviewable"


@dataclass
class ReviewResult:
    outcome: ReviewOutcome
    order: Order
    new_balance: Optional[int] = None
    membership_expires_at: Optional[datetime] = None


def _allowed_from(action: ReviewAction) -> tuple[str, ...]:
    if action is ReviewAction.APPROVE and settings.approve_requires_paid:
        return (ORDER_PAID,)
    return REVIEWABLE_STATUSES


async def _grant(session: AsyncSession, order: Order, reviewer_id: str) -> ReviewResult:
    """Apply the approved order's effect. Runs inside the review transaction."""
    if order.kind == ORDER_KIND_COIN:
        if not order.coin_amount or order.coin_amount <= 0:
            raise InvariantViolation("coin order without a positive amount", detail={"order_id": order.id})
        new_balance = await credit(
            session,
            order.user_id,
            int(order.coin_amount),
            ENTRY_RECHARGE,
            f"recharge order {order.order_no}",
            {"order_id": order.id, "order_no": order.order_no},
        )
        return ReviewResult(ReviewOutcome.APPROVED, order, new_balance=new_balance)
    if order.kind == ORDER_KIND_MEMBERSHIP:
        activation = await activate_membership(
            session,
            order.user_id,
            order.member_level or "",
            int(order.duration_days or 0),
            log_as=reviewer_id,
            reason=f"order {order.order_no} approved",
        )
        return ReviewResult(ReviewOutcome.APPROVED, order, membership_expires_at=activation.new_expiry)
    raise InvariantViolation("order of unknown kind", detail={"order_id": order.id, "kind": order.kind})


async def review(
    order_id: int,
    reviewer_id: str,
    action: Union[ReviewAction, str],
    reason: Optional[str] = None,
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ReviewResult:
    """Approve or reject a payment claim exactly once.

    The status transition, the credit (or membership grant), the ledger entry
    and the audit row commit together or not at all. Whichever concurrent
    reviewer wins the ``pending|paid -> approved|rejected`` transition applies
    the effect; every other caller, and any retry after the fact, gets
    ``ALREADY_PROCESSED`` with the order as it stands. An approval refused
    only because the order is not yet paid returns ``NOT_REVIEWABLE``.
    """
    try:
        action = ReviewAction(action)
    except ValueError:
        raise ValidationError(f"unknown review action: {action!r}") from None
    if not reviewer_id:
        raise ValidationError("reviewer_id is required")
    reason = (reason or "").strip() or None
    if action is ReviewAction.REJECT and reason is None:
        raise ValidationError("a reason is required to reject an order")

    to_status = ORDER_APPROVED if action is ReviewAction.APPROVE else ORDER_REJECTED
    fields = {"reviewed_by": str(reviewer_id), "reviewed_at": db_now()}
    if action is ReviewAction.REJECT:
        fields["reject_reason"] = reason

    async def work(session: AsyncSession) -> ReviewResult:
        store = OrderStore(session)
        res = await store.transition(order_id, _allowed_from(action), to_status, **fields)
        if not res.changed:
            current = await store.find_by_id(order_id)
            if current is None:
                raise NotFound("Order", order_id)
            if current.status in REVIEWABLE_STATUSES:
                return ReviewResult(ReviewOutcome.NOT_REVIEWABLE, current)
            return ReviewResult(ReviewOutcome.ALREADY_PROCESSED, current)

        order = res.order
        if action is ReviewAction.APPROVE:
            result = await _grant(session, order, str(reviewer_id))
        else:
            result = ReviewResult(ReviewOutcome.REJECTED, order)

        meta = {"order_no": order.order_no, "kind": order.kind, "user_id": order.user_id}
        if result.new_balance is not None:
            meta["balance_after"] = result.new_balance
        if result.membership_expires_at is not None:
            meta["expires_at"] = result.membership_expires_at.isoformat()
        if reason and action is ReviewAction.REJECT:
            meta["reason"] = reason
        await log_audit(
            session,
            actor=str(reviewer_id),
            action=f"order_{to_status}",
            target_type="order",
            target_id=order.id,
            meta=meta,
        )
        return result

    with correlation_scope():
        result = await run_ledger_unit(work, sessions=sessions, op="review")
        log_extra = {
            "order_id": order_id,
            "reviewer_id": str(reviewer_id),
            "action": action.value,
            "outcome": result.outcome.value,
        }
        if result.outcome is ReviewOutcome.NOT_REVIEWABLE:
            logger.info("review skipped, order not yet paid", extra={"extra": log_extra})
        elif result.outcome is ReviewOutcome.ALREADY_PROCESSED:
            logger.info("review skipped, order already processed", extra={"extra": log_extra})
        else:
            logger.info("order reviewed", extra={"extra": log_extra})
    return result

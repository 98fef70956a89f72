from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from paydesk.utils.time import db_now

# Order lifecycle
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_APPROVED = "approved"
ORDER_REJECTED = "rejected"
ORDER_STATUSES = (ORDER_PENDING, ORDER_PAID, ORDER_APPROVED, ORDER_REJECTED)
REVIEWABLE_STATUSES = (ORDER_PENDING, ORDER_PAID)

ORDER_KIND_COIN = "coin"
ORDER_KIND_MEMBERSHIP = "membership"

PAYMENT_TYPES = ("wechat", "alipay")

# Ledger entry types
ENTRY_RECHARGE = "recharge"
ENTRY_CHECKIN = "checkin"
ENTRY_EXCHANGE = "exchange"
ENTRY_CONSUME = "consume"
ENTRY_ADJUST = "adjust"
ENTRY_PROMOTION = "promotion"
ENTRY_TYPES = (ENTRY_RECHARGE, ENTRY_CHECKIN, ENTRY_EXCHANGE, ENTRY_CONSUME, ENTRY_ADJUST, ENTRY_PROMOTION)

LEVEL_FREE = "free"
LEVEL_VIP = "vip"
LEVEL_SVIP = "svip"
MEMBER_LEVELS = (LEVEL_FREE, LEVEL_VIP, LEVEL_SVIP)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("order_no", name="uq_orders_order_no"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_no: Mapped[str] = mapped_column(String(32))
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)

    # coin orders
    coin_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    # membership orders; plan fields are captured at creation time
    plan_id: Mapped[Optional[int]] = mapped_column(ForeignKey("membership_plans.id"), nullable=True, index=True)
    member_level: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    price: Mapped[int] = mapped_column(Integer)  # cents
    status: Mapped[str] = mapped_column(String(16), index=True, default=ORDER_PENDING)
    payment_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    payment_screenshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    remark_code: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, index=True, default=db_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=db_now, onupdate=db_now)


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="balance_non_negative"),
        CheckConstraint("balance = total_earned - total_spent", name="balance_reconciles"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0)
    total_earned: Mapped[int] = mapped_column(BigInteger, default=0)
    total_spent: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=db_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=db_now, onupdate=db_now)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(16), index=True)
    amount: Mapped[int] = mapped_column(BigInteger)  # signed
    balance_after: Mapped[int] = mapped_column(BigInteger)
    description: Mapped[str] = mapped_column(Text, default="")
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True, default=db_now)


class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100))
    member_level: Mapped[str] = mapped_column(String(8), index=True)
    duration_days: Mapped[int] = mapped_column(Integer)
    price: Mapped[int] = mapped_column(Integer)  # cents
    coin_price: Mapped[int] = mapped_column(Integer)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=db_now, onupdate=db_now)


class Membership(Base):
    __tablename__ = "memberships"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True)
    member_level: Mapped[str] = mapped_column(String(8), default=LEVEL_FREE)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=db_now, onupdate=db_now)


class MembershipAdjustLog(Base):
    __tablename__ = "membership_adjust_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    admin_id: Mapped[str] = mapped_column(String(64), index=True)
    previous_level: Mapped[str] = mapped_column(String(8))
    new_level: Mapped[str] = mapped_column(String(8))
    previous_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    new_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reason: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True, default=db_now)


class CheckinRecord(Base):
    __tablename__ = "checkins"
    __table_args__ = (UniqueConstraint("user_id", "checkin_date", name="uq_checkins_user_day"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    checkin_date: Mapped[date] = mapped_column(Date, index=True)
    streak_count: Mapped[int] = mapped_column(Integer, default=1)
    coins_earned: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=db_now)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(64))  # admin id | user id | system
    action: Mapped[str] = mapped_column(String(64), index=True)
    target_type: Mapped[str] = mapped_column(String(64))
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=db_now)


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(191), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=db_now, onupdate=db_now)

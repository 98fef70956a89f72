from __future__ import annotations

import logging
from typing import Optional

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message

from paydesk.db.models import ORDER_KIND_COIN, REVIEWABLE_STATUSES, Order
from paydesk.db.order_store import OrderFilters
from paydesk.services import approval, ledger, orders, runtime_config, stats
from paydesk.services.approval import ReviewAction, ReviewOutcome
from paydesk.services.errors import NotFound, PaydeskError
from paydesk.services.notifications import notify_user
from paydesk.services.security import is_admin_uid

logger = logging.getLogger(__name__)

router = Router()

PENDING_PAGE_SIZE = 20
NO_ACCESS = "⛔️ You are not an admin."


def _status_emoji(st: str) -> str:
    return {
        "pending": "🕒",
        "paid": "💳",
        "approved": "✅",
        "rejected": "❌",
    }.get((st or "").lower(), "ℹ️")


def _price_label(cents: int) -> str:
    return f"¥{cents / 100:.2f}"


def _order_text(o: Order) -> str:
    if o.kind == ORDER_KIND_COIN:
        product = f"{o.coin_amount} coins"
    else:
        product = f"{o.member_level} × {o.duration_days}d"
    lines = [
        f"{_status_emoji(o.status)} Order #{o.id} | {o.order_no} | {o.status}",
        f"User: {o.user_id} | {product} | {_price_label(o.price)}",
        f"Remark: {o.remark_code or '-'} | Pay: {o.payment_type or '-'} | Created: {o.created_at:%Y-%m-%d %H:%M}",
    ]
    if o.transaction_note:
        lines.append(f"Note: {o.transaction_note}")
    return "\n".join(lines)


async def _notify_payer(o: Order, text: str) -> None:
    # payer ids coming from the Telegram front end are numeric chat ids
    if o.user_id.isdigit():
        await notify_user(int(o.user_id), text)


def _review_kb(order_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(text="Approve ✅", callback_data=f"ord:approve:{order_id}")]]
    )


@router.message(Command("orders_pending"))
async def admin_orders_pending(message: Message) -> None:
    if not (message.from_user and is_admin_uid(message.from_user.id)):
        await message.answer(NO_ACCESS)
        return
    page = await orders.list_orders(
        OrderFilters(status=list(REVIEWABLE_STATUSES)),
        page=1,
        page_size=PENDING_PAGE_SIZE,
        sort_order="asc",
    )
    if not page.items:
        await message.answer("No orders waiting for review.")
        return
    for o in page.items:
        await message.answer(_order_text(o), reply_markup=_review_kb(o.id))
    footer = f"{len(page.items)} of {page.total} shown. Reject with /reject <id> <reason>."
    await message.answer(footer)


@router.callback_query(F.data.startswith("ord:approve:"))
async def cb_approve_order(cb: CallbackQuery) -> None:
    if not (cb.from_user and is_admin_uid(cb.from_user.id)):
        await cb.answer(NO_ACCESS, show_alert=True)
        return
    try:
        order_id = int((cb.data or "").split(":")[2])
    except (IndexError, ValueError):
        await cb.answer("Invalid order id", show_alert=True)
        return
    try:
        result = await approval.review(order_id, str(cb.from_user.id), ReviewAction.APPROVE)
    except NotFound:
        await cb.answer("Order not found", show_alert=True)
        return
    except PaydeskError as e:
        await cb.answer(f"⛔️ {e.message}", show_alert=True)
        return
    if result.outcome is ReviewOutcome.NOT_REVIEWABLE:
        await cb.answer(f"Order is {result.order.status}; approval needs a submitted payment", show_alert=True)
        return
    if result.outcome is ReviewOutcome.ALREADY_PROCESSED:
        await cb.answer(f"Already processed ({result.order.status})", show_alert=True)
        return
    details = ""
    if result.new_balance is not None:
        details += f" | balance {result.new_balance:,}"
    if result.membership_expires_at is not None:
        details += f" | until {result.membership_expires_at:%Y-%m-%d}"
    suffix = "\n\nApproved ✅" + details
    if cb.message is not None:
        try:
            await cb.message.edit_text((cb.message.text or "Order") + suffix)
        except Exception as e:
            logger.debug("approve: message edit failed: %s", e)
    await cb.answer("Approved")
    await _notify_payer(result.order, f"✅ Your order {result.order.order_no} was approved{details}")


def _split_args(command: Optional[CommandObject], maxsplit: int) -> list[str]:
    raw = (command.args if command else None) or ""
    return raw.strip().split(maxsplit=maxsplit) if raw.strip() else []


@router.message(Command("reject"))
async def admin_reject(message: Message, command: Optional[CommandObject] = None) -> None:
    if not (message.from_user and is_admin_uid(message.from_user.id)):
        await message.answer(NO_ACCESS)
        return
    args = _split_args(command, 1)
    if len(args) < 2 or not args[0].isdigit():
        await message.answer("Usage: /reject <order_id> <reason>")
        return
    order_id, reason = int(args[0]), args[1]
    try:
        result = await approval.review(order_id, str(message.from_user.id), ReviewAction.REJECT, reason)
    except NotFound:
        await message.answer(f"Order #{order_id} not found.")
        return
    except PaydeskError as e:
        await message.answer(f"⛔️ {e.message}")
        return
    if result.outcome is ReviewOutcome.ALREADY_PROCESSED:
        await message.answer(f"Order #{order_id} was already processed ({result.order.status}).")
        return
    await message.answer(f"Order #{order_id} rejected ❌\nReason: {reason}")
    await _notify_payer(result.order, f"❌ Your order {result.order.order_no} was rejected.\nReason: {reason}")


@router.message(Command("adjust"))
async def admin_adjust(message: Message, command: Optional[CommandObject] = None) -> None:
    if not (message.from_user and is_admin_uid(message.from_user.id)):
        await message.answer(NO_ACCESS)
        return
    args = _split_args(command, 2)
    if len(args) < 3:
        await message.answer("Usage: /adjust <user_id>[,<user_id>...] <amount> <note>")
        return
    raw_users, raw_amount, note = args
    try:
        amount = int(raw_amount)
    except ValueError:
        await message.answer("Amount must be an integer (negative to debit).")
        return
    user_ids = [u.strip() for u in raw_users.split(",") if u.strip()]
    admin_id = str(message.from_user.id)
    try:
        if len(user_ids) > 1:
            balances = await ledger.batch_adjust(user_ids, amount, note, admin_id)
        else:
            user_id = user_ids[0] if user_ids else ""
            new_balance = await ledger.adjust_balance(user_id, amount, note, admin_id)
    except PaydeskError as e:
        await message.answer(f"⛔️ {e.message}")
        return
    if len(user_ids) > 1:
        lines = [f"Done for {len(balances)} users:"]
        lines += [f"{uid}: {bal:,} coins" for uid, bal in balances.items()]
        await message.answer("\n".join(lines))
        return
    await message.answer(f"Done. New balance of {user_id}: {new_balance:,} coins")


@router.message(Command("config"))
async def admin_config(message: Message, command: Optional[CommandObject] = None) -> None:
    if not (message.from_user and is_admin_uid(message.from_user.id)):
        await message.answer(NO_ACCESS)
        return
    args = _split_args(command, 1)
    if len(args) < 2:
        keys = ", ".join(runtime_config.CONFIG_KEYS)
        await message.answer(f"Usage: /config <key> <value>\nKeys: {keys}")
        return
    key, value = args[0].upper(), args[1]
    try:
        stored = await runtime_config.update_config(key, value, str(message.from_user.id))
    except PaydeskError as e:
        await message.answer(f"⛔️ {e.message}")
        return
    await message.answer(f"{key} = {stored}")


@router.message(Command("config_reset"))
async def admin_config_reset(message: Message, command: Optional[CommandObject] = None) -> None:
    if not (message.from_user and is_admin_uid(message.from_user.id)):
        await message.answer(NO_ACCESS)
        return
    args = _split_args(command, 1)
    if not args:
        await message.answer("Usage: /config_reset <key>")
        return
    key = args[0].upper()
    try:
        removed = await runtime_config.reset_config(key, str(message.from_user.id))
    except PaydeskError as e:
        await message.answer(f"⛔️ {e.message}")
        return
    await message.answer(f"{key} reset to the environment value." if removed else f"{key} had no override.")


@router.message(Command("stats"))
async def admin_stats(message: Message) -> None:
    if not (message.from_user and is_admin_uid(message.from_user.id)):
        await message.answer(NO_ACCESS)
        return
    s = await stats.get_stats()
    lines = [
        "📊 Coins",
        f"Earned: {s.total_earned:,} | Spent: {s.total_spent:,} | Circulation: {s.total_circulation:,}",
    ]
    for t in s.by_type:
        lines.append(f"  {t.type}: {t.count} entries, {t.total_amount:,}")
    lines.append("📦 Orders")
    for kind, by_status in sorted(s.orders.items()):
        counts = ", ".join(f"{st}={n}" for st, n in sorted(by_status.items()))
        lines.append(f"  {kind}: {counts}")
    lines.append(f"Needs review: {s.needs_review} | Approved revenue: {_price_label(s.approved_revenue)}")
    lines.append(f"Check-ins: {s.checkins}")
    await message.answer("\n".join(lines))

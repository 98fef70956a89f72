from __future__ import annotations

import asyncio


def test_notifications_without_token() -> None:
    # When TELEGRAM_BOT_TOKEN/LOG_CHAT_ID are not set, notifications should return False (no crash)
    from paydesk.services.notifications import notify_log, notify_user

    ok_user = asyncio.run(notify_user(telegram_id=123456789, text="test message"))
    ok_log = asyncio.run(notify_log(text="operational log"))

    assert ok_user is False
    assert ok_log is False


def test_alert_invariant_logs_error(caplog) -> None:
    from paydesk.services.errors import InvariantViolation
    from paydesk.services.notifications import alert_invariant

    exc = InvariantViolation("balance below zero", detail={"user_id": "u9"})
    with caplog.at_level("ERROR"):
        asyncio.run(alert_invariant(exc, op="review"))

    record = caplog.records[-1]
    assert record.levelname == "ERROR"
    assert "review" in record.getMessage()
    assert record.extra["user_id"] == "u9"
    assert record.extra["code"] == "INVARIANT_VIOLATION"


def test_order_text_formats_price_and_product() -> None:
    from datetime import datetime

    from paydesk.bot.handlers.admin_orders import _order_text
    from paydesk.db.models import Order

    o = Order(
        id=7,
        order_no="C1700000000000ABC123",
        user_id="u1",
        kind="coin",
        coin_amount=550,
        price=4500,
        status="paid",
        payment_type="wechat",
        remark_code="4821",
        transaction_note="sent 10:32",
        created_at=datetime(2026, 3, 1, 9, 30),
    )

    s = _order_text(o)
    assert "Order #7" in s
    assert "550 coins" in s
    assert "¥45.00" in s
    assert "Remark: 4821" in s
    assert "Note: sent 10:32" in s


def test_order_text_for_membership() -> None:
    from datetime import datetime

    from paydesk.bot.handlers.admin_orders import _order_text
    from paydesk.db.models import Order

    o = Order(
        id=8,
        order_no="M1700000000000XYZ789",
        user_id="u2",
        kind="membership",
        member_level="svip",
        duration_days=90,
        price=19900,
        status="pending",
        created_at=datetime(2026, 3, 1, 9, 30),
    )
    s = _order_text(o)
    assert "svip × 90d" in s
    assert "Pay: -" in s

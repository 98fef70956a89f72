from __future__ import annotations

from typing import Set

from paydesk.config import settings


def get_admin_ids() -> Set[int]:
    """Telegram user IDs allowed to review claims and adjust balances (TELEGRAM_ADMIN_IDS)."""
    return set(settings.telegram_admin_ids)


def is_admin_uid(uid: int | None) -> bool:
    return bool(uid and uid in get_admin_ids())

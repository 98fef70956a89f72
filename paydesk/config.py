from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

# .env must be loaded before the Settings defaults below are evaluated;
# variables already present in the environment win
load_dotenv()


def _parse_csv_ints(raw: str) -> List[int]:
    ids: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            pass
    return ids


def _bool_env(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


_DEFAULT_RECHARGE_PACKAGES = (
    '[{"coins": 100, "price": 10}, {"coins": 500, "price": 45, "bonus": 50}, '
    '{"coins": 1000, "price": 88, "bonus": 150}]'
)


@dataclass
class Settings:
    app_env: str = os.getenv("APP_ENV", "production")
    tz: str = os.getenv("TZ", "UTC")

    db_url: str = os.getenv("DB_URL", "")
    db_retry_attempts: int = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
    db_retry_backoff: float = float(os.getenv("DB_RETRY_BACKOFF", "0.05"))

    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_admin_ids: List[int] = field(
        default_factory=lambda: _parse_csv_ints(os.getenv("TELEGRAM_ADMIN_IDS", ""))
    )
    log_chat_id: str = os.getenv("LOG_CHAT_ID", "")

    # Ledger
    max_balance: int = int(os.getenv("MAX_BALANCE", "2000000000"))

    # Review policy
    approve_requires_paid: bool = _bool_env("APPROVE_REQUIRES_PAID")

    # Check-in reward table; DB settings rows with the same keys take precedence
    checkin_base_reward: int = int(os.getenv("CHECKIN_BASE_REWARD", "10"))
    checkin_streak_bonus: str = os.getenv("CHECKIN_STREAK_BONUS", "0,5,10,15,20,30,50")
    checkin_streak_max: int = int(os.getenv("CHECKIN_STREAK_MAX", "7"))

    # JSON list of {"coins", "price" (yuan), "bonus"?}
    recharge_packages: str = os.getenv("RECHARGE_PACKAGES", _DEFAULT_RECHARGE_PACKAGES)

    reconcile_interval_minutes: int = int(os.getenv("RECONCILE_INTERVAL_MINUTES", "60"))
    review_backlog_hours: int = int(os.getenv("REVIEW_BACKLOG_HOURS", "12"))


settings = Settings()

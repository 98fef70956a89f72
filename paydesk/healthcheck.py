import asyncio
import os
import sys

from sqlalchemy import text

from paydesk.db.session import build_engine

# Healthcheck: DB connectivity (SELECT 1) and, unless HEALTHCHECK_SKIP_TELEGRAM=1,
# presence of the Telegram token used for the admin surface and alerts.


async def _check_db() -> bool:
    db_url = os.getenv("DB_URL", "")
    if not db_url:
        return False
    engine = build_engine(db_url)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
    finally:
        await engine.dispose()


def main() -> int:
    skip_tg = os.getenv("HEALTHCHECK_SKIP_TELEGRAM", "0").strip().lower() in {"1", "true", "yes", "on"}
    if not skip_tg and not os.getenv("TELEGRAM_BOT_TOKEN"):
        print("missing TELEGRAM_BOT_TOKEN", file=sys.stderr)
        return 1

    if not asyncio.run(_check_db()):
        print("db not ready", file=sys.stderr)
        return 1

    print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

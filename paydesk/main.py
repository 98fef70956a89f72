import asyncio
import contextlib
import logging

from aiogram import Bot, Dispatcher

from paydesk.bot.handlers import admin_orders as admin_orders_handlers
from paydesk.bot.middlewares.correlation import CorrelationMiddleware
from paydesk.config import settings
from paydesk.db.session import dispose_engine
from paydesk.logging_config import setup_logging
from paydesk.services.notifications import aclose_bot
from paydesk.services.scheduler import run_scheduler


async def _run_bot(token: str) -> None:
    bot = Bot(token=token)
    dp = Dispatcher()

    corr = CorrelationMiddleware()
    dp.message.middleware(corr)
    dp.callback_query.middleware(corr)

    dp.include_router(admin_orders_handlers.router)

    logging.info("Starting Telegram admin bot polling ...")
    await bot.delete_webhook(drop_pending_updates=True)
    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()


async def main() -> None:
    setup_logging()
    if not settings.db_url:
        logging.error("DB_URL is not set. Put it in .env")
        raise SystemExit(1)

    scheduler = asyncio.create_task(run_scheduler())
    try:
        token = settings.telegram_bot_token
        if token:
            await _run_bot(token)
        else:
            logging.warning("TELEGRAM_BOT_TOKEN not set; running scheduler only")
            await scheduler
    finally:
        scheduler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler
        await aclose_bot()
        await dispose_engine()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from paydesk.utils.correlation import correlation_scope


class CorrelationMiddleware(BaseMiddleware):
    """One correlation id per incoming update, visible to handlers and the core."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        update_id = getattr(data.get("event_update"), "update_id", None)
        with correlation_scope(f"tg-{update_id}" if update_id is not None else None) as cid:
            data["correlation_id"] = cid
            return await handler(event, data)

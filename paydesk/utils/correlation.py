from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator

# Task-local id tying together the log lines of one unit of work
_cid: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    return _cid.get("")


@contextmanager
def correlation_scope(value: str | None = None) -> Iterator[str]:
    """Reuse the caller's correlation id, or open a fresh one for this block."""
    current = _cid.get("")
    if current and not value:
        yield current
        return
    token = _cid.set(value or uuid.uuid4().hex)
    try:
        yield _cid.get()
    finally:
        _cid.reset(token)

from __future__ import annotations

from typing import Any, Optional


class PaydeskError(Exception):
    """Base class for errors surfaced to callers of the core."""

    code = "PAYDESK_ERROR"

    def __init__(self, message: str, *, detail: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFound(PaydeskError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, ident: Any) -> None:
        super().__init__(f"{entity} {ident} not found", detail={"entity": entity, "id": ident})


class Duplicate(PaydeskError):
    code = "DUPLICATE"

    def __init__(self, entity: str, field: str) -> None:
        super().__init__(f"{entity} with this {field} already exists", detail={"entity": entity, "field": field})


class ValidationError(PaydeskError):
    code = "VALIDATION_ERROR"


class InsufficientBalance(ValidationError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id: str, required: int, current: int) -> None:
        super().__init__(
            "insufficient coin balance",
            detail={"user_id": user_id, "required": required, "current": current},
        )


class PersistenceError(PaydeskError):
    """Transient database failure; the whole operation is safe to retry."""

    code = "PERSISTENCE_ERROR"


class InvariantViolation(PaydeskError):
    """Ledger state that must never exist. Always logged and alerted."""

    code = "INVARIANT_VIOLATION"

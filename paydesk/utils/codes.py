from __future__ import annotations

import random
import string
import time

_ORDER_NO_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_no(prefix: str) -> str:
    # e.g. C1702876543210ABC123
    millis = int(time.time() * 1000)
    tail = "".join(random.choices(_ORDER_NO_ALPHABET, k=6))
    return f"{prefix}{millis}{tail}"


def generate_remark_code() -> str:
    """Four-digit code the payer puts in the transfer remark."""
    return str(random.randint(1000, 9999))

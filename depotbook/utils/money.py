from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

# Single ledger precision for quantities, prices, volumes and amounts.
LEDGER_SCALE = 6
FACTOR_SCALE = 12

_LEDGER_QUANTUM = Decimal(1).scaleb(-LEDGER_SCALE)
_FACTOR_QUANTUM = Decimal(1).scaleb(-FACTOR_SCALE)


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip()
    if not s:
        return None
    s = s.replace(",", "")
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def quantize_ledger(value: Any) -> Decimal | None:
    d = to_decimal(value)
    if d is None:
        return None
    return d.quantize(_LEDGER_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_factor(value: Any) -> Decimal | None:
    d = to_decimal(value)
    if d is None:
        return None
    return d.quantize(_FACTOR_QUANTUM, rounding=ROUND_HALF_UP)


def format_amount(value: Any, ccy: str | None = None, digits: int = 2, dash: str = "-") -> str:
    """
    Human-readable amount for log lines, e.g. "-1,240.00 EUR".

    - `None` -> dash
    - non-numeric string -> returned as-is
    """
    d = to_decimal(value)
    if d is None:
        if value is None:
            return dash
        s = str(value).strip()
        return s if s else dash

    digits = max(0, int(digits))
    q = Decimal(1) if digits == 0 else Decimal("1").scaleb(-digits)
    d = d.quantize(q, rounding=ROUND_HALF_UP)
    out = f"{d:,.{digits}f}"
    return f"{out} {ccy}" if ccy else out

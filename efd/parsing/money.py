# File: efd/parsing/money.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

DEC2 = Decimal("0.01")
ZERO = Decimal("0")


def _clean_number(text: str) -> str:
    txt = text.strip().replace("\xa0", "").replace(" ", "")
    if "," in txt:
        # "1.234,56" -> "1234.56"; the ledger itself never uses thousands
        txt = txt.replace(".", "").replace(",", ".")
    return txt


def try_decimal(value: Any) -> Decimal | None:
    """Return ``value`` as :class:`Decimal` or ``None`` if it is not numeric.

    Accepts comma decimals (``"1234,56"``), dot decimals (``"1234.56"``) and
    thousands separators written with dots or spaces.  Empty input is
    ``None`` as well.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        dec = Decimal(str(value))
        return dec if dec.is_finite() else None
    txt = _clean_number(str(value))
    if not txt:
        return None
    try:
        dec = Decimal(txt)
    except InvalidOperation:
        return None
    return dec if dec.is_finite() else None


def parse_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Lenient variant of :func:`try_decimal` returning ``default``."""
    dec = try_decimal(value)
    return default if dec is None else dec


def dec2(value: Decimal) -> Decimal:
    """Quantize value to two decimal places using ``ROUND_HALF_UP``."""
    return value.quantize(DEC2, rounding=ROUND_HALF_UP)


def format_number(value: Decimal | float | int | None, decimals: int = 2) -> str:
    """Emit a number the way the ledger stores it (``1234,56``).

    ``None`` becomes an empty field.
    """
    if value is None:
        return ""
    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    quant = Decimal(1).scaleb(-decimals)
    out = dec.quantize(quant, rounding=ROUND_HALF_UP)
    return f"{out:f}".replace(".", ",")


def pct(part: Decimal, whole: Decimal) -> Decimal:
    """Return ``part`` as a percentage of ``whole`` (0 when whole is 0)."""
    if not whole:
        return ZERO
    return part / whole * Decimal("100")

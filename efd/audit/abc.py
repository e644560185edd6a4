"""ABC (Pareto) classification of item codes by aggregate value."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

import pandas as pd

from efd.constants import PROGRESS_STEP, AuditThresholds
from efd.models import LedgerFile
from efd.parsing.codes import Direction
from efd.parsing.money import parse_decimal
from efd.utils import CancelToken, ProgressTicker

log = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class AbcRow:
    rank: int
    code: str
    description: str
    value: Decimal
    quantity: Decimal
    pct: Decimal
    cumulative_pct: Decimal
    abc_class: str


def _as_row(item: Any) -> tuple[str, Decimal, Decimal, str]:
    if isinstance(item, dict):
        return (
            str(item.get("code") or item.get("cod_item") or "").strip(),
            parse_decimal(item.get("value")),
            parse_decimal(item.get("quantity")),
            str(item.get("description") or "").strip(),
        )
    if isinstance(item, (tuple, list)):
        code, value, *rest = item
        qty = rest[0] if rest else None
        desc = rest[1] if len(rest) > 1 else ""
        return str(code or "").strip(), parse_decimal(value), parse_decimal(qty), str(desc or "").strip()
    return (
        item.product_code,
        parse_decimal(item.value),
        parse_decimal(item.quantity),
        (item.description or "").strip(),
    )


def _abc_class(cumulative: Decimal, t: AuditThresholds) -> str:
    if cumulative <= t.abc_a_pct + t.abc_epsilon:
        return "A"
    if cumulative <= t.abc_b_pct + t.abc_epsilon:
        return "B"
    return "C"


def classify_abc(
    items: Iterable,
    thresholds: AuditThresholds | None = None,
    *,
    cancel: CancelToken | None = None,
) -> list[AbcRow]:
    """Aggregate ``(code, value, quantity, description)`` per code and rank.

    Rows are ordered by value descending, equal values by code ascending.
    The description is the first non-empty one seen for the code.  Entries
    without a code are ignored.  With a zero grand total every row gets
    0 % and class ``C``.
    """
    t = thresholds or AuditThresholds()
    items = list(items)
    ticker = ProgressTicker(len(items), PROGRESS_STEP, None, cancel)
    rows = []
    for item in items:
        ticker.tick()
        row = _as_row(item)
        if row[0]:
            rows.append(row)
    if not rows:
        return []

    df = pd.DataFrame(rows, columns=["code", "value", "quantity", "description"])
    df["description"] = df["description"].where(df["description"] != "", None)
    grouped = df.groupby("code", sort=False, as_index=False).agg(
        {"value": "sum", "quantity": "sum", "description": "first"}
    )

    records = [
        (
            str(r.code),
            parse_decimal(r.value),
            parse_decimal(r.quantity),
            r.description if isinstance(r.description, str) else "",
        )
        for r in grouped.itertuples(index=False)
    ]
    records.sort(key=lambda r: r[0])
    records.sort(key=lambda r: r[1], reverse=True)

    total = sum((r[1] for r in records), ZERO)
    out: list[AbcRow] = []
    running = ZERO
    for rank, (code, value, qty, desc) in enumerate(records, start=1):
        running += value
        if total > 0:
            pct = value / total * HUNDRED
            cumulative = running / total * HUNDRED
            cls = _abc_class(cumulative, t)
        else:
            pct = cumulative = ZERO
            cls = "C"
        out.append(AbcRow(rank, code, desc, value, qty, pct, cumulative, cls))

    log.debug(
        "ABC: %d codes, A=%d B=%d C=%d",
        len(out),
        sum(r.abc_class == "A" for r in out),
        sum(r.abc_class == "B" for r in out),
        sum(r.abc_class == "C" for r in out),
    )
    return out


def abc_items_from_ledger(
    ledger: LedgerFile, direction: Direction | None = Direction.OUTBOUND
) -> list[tuple[str, Decimal, Decimal, str]]:
    """C170 lines of non-cancelled documents as ABC input.

    The description comes from the product table (0200) when the line has
    none of its own.
    """
    out = []
    for doc in ledger.documents:
        if doc.is_cancelled or (direction is not None and doc.direction is not direction):
            continue
        for item in doc.items:
            desc = item.description
            if not desc and item.product_code in ledger.products:
                desc = ledger.products[item.product_code].description
            out.append((item.product_code, item.value, item.quantity, desc))
    return out


def abc_frame(rows: list[AbcRow]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "rank": r.rank,
                "code": r.code,
                "description": r.description,
                "value": r.value,
                "quantity": r.quantity,
                "pct": round(float(r.pct), 2),
                "cumulative_pct": round(float(r.cumulative_pct), 2),
                "class": r.abc_class,
            }
            for r in rows
        ]
    )

"""Outbound values per day and CFOP: ledger (C190) vs invoices (vProd)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable

import pandas as pd

from efd.constants import AuditThresholds
from efd.models import InvoiceDocument, LedgerFile
from efd.parsing.codes import Direction
from efd.parsing.sped import day_cfop_totals
from efd.parsing.utils import only_digits

log = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
NOISE = Decimal("0.00001")


class RiskLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass(frozen=True)
class DayCfopRow:
    day: date
    cfop: str
    invoice_value: Decimal
    ledger_value: Decimal
    diff_abs: Decimal
    diff_pct: Decimal


@dataclass
class DayCfopComparison:
    rows: list[DayCfopRow] = field(default_factory=list)

    @property
    def total_ledger(self) -> Decimal:
        return sum((r.ledger_value for r in self.rows), ZERO)

    @property
    def total_invoice(self) -> Decimal:
        return sum((r.invoice_value for r in self.rows), ZERO)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            [
                {
                    "date": r.day.isoformat(),
                    "cfop": r.cfop,
                    "invoice": r.invoice_value,
                    "ledger": r.ledger_value,
                    "diff": r.diff_abs,
                    "diff_pct": round(float(r.diff_pct), 2),
                    "risk": grade_risk(r)[0].value,
                }
                for r in self.rows
            ]
        )
        return frame


@dataclass(frozen=True)
class DivergenceNote:
    key: str
    invoice_value: Decimal
    ledger_value: Decimal
    diff: Decimal
    kind: str  # BOTH | INVOICE_ONLY | LEDGER_ONLY


def _taxpayer(ledger: LedgerFile, taxpayer_cnpj: str | None) -> str:
    if taxpayer_cnpj is not None:
        return only_digits(taxpayer_cnpj)
    return only_digits(ledger.header.cnpj) if ledger.header else ""


def _own_invoices(invoices: Iterable[InvoiceDocument], cnpj: str) -> list[InvoiceDocument]:
    return [
        inv
        for inv in invoices
        if inv.issue_date is not None and (not cnpj or only_digits(inv.issuer_cnpj) == cnpj)
    ]


def _denoise(value: Decimal) -> Decimal:
    return ZERO if abs(value) < NOISE else value


def compare_by_day_cfop(
    ledger: LedgerFile,
    invoices: Iterable[InvoiceDocument],
    thresholds: AuditThresholds | None = None,
    *,
    taxpayer_cnpj: str | None = None,
    start: date | None = None,
    end: date | None = None,
) -> DayCfopComparison:
    """One row per (day, CFOP) present on either side.

    The ledger side sums C190 operation values of regular outbound
    documents; the invoice side sums item ``vProd`` of invoices issued by
    the taxpayer (CNPJ from the ledger header unless given).  Ignored CFOPs
    are left out.  ``diff_abs`` is invoice minus ledger and ``diff_pct`` is
    relative to the ledger value (0 when that is 0).
    """
    t = thresholds or AuditThresholds()
    ignored = set(t.ignored_cfops)

    def _in_period(day: date) -> bool:
        return (start is None or day >= start) and (end is None or day <= end)

    ledger_side = {
        key: val
        for key, val in day_cfop_totals(ledger, Direction.OUTBOUND).items()
        if key[1] not in ignored and _in_period(key[0])
    }
    invoice_side: dict[tuple[date, str], Decimal] = {}
    for inv in _own_invoices(invoices, _taxpayer(ledger, taxpayer_cnpj)):
        if not _in_period(inv.issue_date):
            continue
        for item in inv.items:
            if item.cfop in ignored:
                continue
            key = (inv.issue_date, item.cfop)
            invoice_side[key] = invoice_side.get(key, ZERO) + item.value

    rows = []
    for key in sorted(set(ledger_side) | set(invoice_side)):
        ledger_val = ledger_side.get(key, ZERO)
        invoice_val = invoice_side.get(key, ZERO)
        diff = _denoise(invoice_val - ledger_val)
        pct = _denoise(diff / ledger_val * HUNDRED) if ledger_val else ZERO
        rows.append(DayCfopRow(key[0], key[1], invoice_val, ledger_val, diff, pct))

    log.info("Day/CFOP comparison: %d row(s)", len(rows))
    return DayCfopComparison(rows)


def grade_risk(
    row: DayCfopRow, thresholds: AuditThresholds | None = None
) -> tuple[RiskLevel, Decimal]:
    """Risk level and a 0-100 score for one comparison row."""
    t = thresholds or AuditThresholds()
    diff = abs(row.diff_abs)
    pct = abs(row.diff_pct)
    if diff > t.risk_high_abs or pct > t.risk_high_pct:
        return RiskLevel.HIGH, Decimal("80") + min(Decimal("20"), pct)
    if diff > t.risk_medium_abs or pct > t.risk_medium_pct:
        return RiskLevel.MEDIUM, Decimal("50") + min(Decimal("29"), pct * 5)
    return RiskLevel.LOW, min(Decimal("49"), pct * 10)


def divergence_details(
    ledger: LedgerFile,
    invoices: Iterable[InvoiceDocument],
    day: date,
    cfop: str,
    *,
    taxpayer_cnpj: str | None = None,
) -> list[DivergenceNote]:
    """Per-document breakdown of one (day, CFOP) row, largest |diff| first."""
    ledger_side: dict[str, Decimal] = {}
    for doc in ledger.outbound:
        if not doc.is_regular or doc.total_value <= 0 or doc.issue_date != day:
            continue
        key = doc.access_key or doc.number or f"DOC-{doc.id}"
        for tot in doc.totals:
            if tot.cfop == cfop:
                ledger_side[key] = ledger_side.get(key, ZERO) + tot.operation_value

    invoice_side: dict[str, Decimal] = {}
    for inv in _own_invoices(invoices, _taxpayer(ledger, taxpayer_cnpj)):
        if inv.issue_date != day:
            continue
        value = sum((i.value for i in inv.items if i.cfop == cfop), ZERO)
        if value > 0:
            invoice_side[inv.access_key] = invoice_side.get(inv.access_key, ZERO) + value

    notes = []
    for key in list(invoice_side) + [k for k in ledger_side if k not in invoice_side]:
        inv_val = invoice_side.get(key, ZERO)
        led_val = ledger_side.get(key, ZERO)
        if inv_val > 0 and led_val > 0:
            kind = "BOTH"
        elif inv_val > 0:
            kind = "INVOICE_ONLY"
        else:
            kind = "LEDGER_ONLY"
        notes.append(DivergenceNote(key, inv_val, led_val, inv_val - led_val, kind))
    notes.sort(key=lambda n: abs(n.diff), reverse=True)
    return notes

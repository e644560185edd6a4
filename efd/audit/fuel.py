# File: efd/audit/fuel.py
# -*- coding: utf-8 -*-
"""
Fuel movement audit (LMC records 1300 / 1310 / 1320)
====================================================
• audit_fuel()               → list[Inconsistency] for one filing period
• fuel_sales_from_ledger()   → FuelSale list from the ledger's own C100/C170
• fuel_sales_from_invoices() → FuelSale list from parsed NF-e / NFC-e
• compare_fuel_sales()       → declared sales vs documents per product-day
• summarize_inconsistencies() → counts by kind and severity

Every comparison uses the tolerances of :class:`AuditThresholds`; two
independently recorded quantities are never compared for exact equality.
The input records are only read.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

import pandas as pd

from efd.constants import PROGRESS_STEP, AuditThresholds
from efd.models import (
    FuelProductDay,
    Inconsistency,
    InconsistencyKind,
    InvoiceDocument,
    LedgerFile,
    Severity,
)
from efd.parsing.codes import Direction, InvoiceModel
from efd.utils import CancelToken, ProgressTicker

log = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MAX_REFERENCES = 10
# rolling std below this fraction of the mean counts as a flat history
FLAT_SPREAD = 1e-6

Kind = InconsistencyKind


@dataclass(frozen=True)
class FuelSale:
    """One document line moving a fuel product on a given day."""

    product_code: str
    movement_date: date
    quantity: Decimal
    value: Decimal = ZERO
    direction: Direction = Direction.OUTBOUND
    cfop: str = ""
    access_key: str = ""
    number: str = ""
    model: str = ""

    @property
    def is_nfce(self) -> bool:
        model = self.model or self.access_key[20:22]
        return model == InvoiceModel.NFCE.value


@dataclass
class FuelSalesComparison:
    product_code: str
    movement_date: date | None
    declared: Decimal
    nfe: Decimal = ZERO
    nfce: Decimal = ZERO
    documents: list[FuelSale] = field(default_factory=list)

    @property
    def documented(self) -> Decimal:
        return self.nfe + self.nfce

    @property
    def difference(self) -> Decimal:
        return self.declared - self.documented

    @property
    def difference_pct(self) -> Decimal:
        if self.declared <= 0:
            return ZERO
        return abs(self.difference) / self.declared * HUNDRED


# ────────────────────────── document sources ──────────────────────────
def fuel_sales_from_ledger(ledger: LedgerFile) -> list[FuelSale]:
    """Every C170 line of non-cancelled, dated documents.

    CFOP filtering happens in the audit, so inbound and outbound lines of
    any CFOP are returned.
    """
    out = []
    for doc in ledger.documents:
        day = doc.issue_date
        if doc.is_cancelled or day is None or doc.direction is None:
            continue
        for item in doc.items:
            if not item.product_code:
                continue
            out.append(
                FuelSale(
                    product_code=item.product_code,
                    movement_date=day,
                    quantity=item.quantity,
                    value=item.value,
                    direction=doc.direction,
                    cfop=item.cfop,
                    access_key=doc.access_key,
                    number=doc.number,
                    model=doc.model,
                )
            )
    return out


def fuel_sales_from_invoices(
    invoices: Iterable[InvoiceDocument],
    taxpayer_cnpj: str | None = None,
    product_map: dict[str, str] | None = None,
) -> list[FuelSale]:
    """Invoice lines as :class:`FuelSale` records.

    With ``taxpayer_cnpj`` the direction is taken from the taxpayer's point
    of view (documents issued by others are inbound).  ``product_map``
    translates the issuer's product codes into ledger codes.
    """
    product_map = product_map or {}
    out = []
    for inv in invoices:
        if inv.issue_date is None:
            continue
        if taxpayer_cnpj:
            own = inv.issuer_cnpj == taxpayer_cnpj
            direction = (inv.direction or Direction.OUTBOUND) if own else Direction.INBOUND
        else:
            direction = inv.direction or Direction.OUTBOUND
        for item in inv.items:
            out.append(
                FuelSale(
                    product_code=product_map.get(item.product_code, item.product_code),
                    movement_date=inv.issue_date,
                    quantity=item.quantity,
                    value=item.value,
                    direction=direction,
                    cfop=item.cfop,
                    access_key=inv.access_key,
                    number=inv.number,
                    model=inv.model,
                )
            )
    return out


# ────────────────────────── helpers ──────────────────────────
def _pct(diff: Decimal, base: Decimal) -> Decimal:
    """``diff`` as percent of ``base``; 100 when there is no base."""
    return abs(diff) / abs(base) * HUNDRED if base else HUNDRED


def _finding(
    kind: InconsistencyKind,
    severity: Severity,
    day: FuelProductDay,
    expected: Decimal,
    found: Decimal,
    difference: Decimal,
    difference_pct: Decimal,
    description: str,
    *,
    tank: str | None = None,
    references: Iterable[str] = (),
) -> Inconsistency:
    return Inconsistency(
        kind=kind,
        severity=severity,
        expected=expected,
        found=found,
        difference=difference,
        difference_pct=difference_pct,
        description=description,
        product_code=day.product_code,
        movement_date=day.movement_date,
        tank=tank,
        references=tuple(references),
    )


def _by_product(days: Iterable[FuelProductDay]) -> dict[str, list[FuelProductDay]]:
    groups: dict[str, list[FuelProductDay]] = defaultdict(list)
    for day in days:
        groups[day.product_code].append(day)
    for movs in groups.values():
        movs.sort(key=lambda d: d.movement_date or date.min)
    return dict(groups)


def _walk(items, ticker: ProgressTicker | None):
    for item in items:
        if ticker is not None:
            ticker.tick()
        yield item


# ────────────────────────── checks ──────────────────────────
def _check_stock(groups, t: AuditThresholds, ticker=None) -> list[Inconsistency]:
    out = []
    for movs in groups.values():
        for idx, day in enumerate(_walk(movs, ticker)):
            if idx > 0:
                expected = movs[idx - 1].closing_book
                if day.receipts == 0 and day.opening > expected + t.min_diff:
                    diff = day.opening - expected
                    pct = diff / expected * HUNDRED if expected > 0 else HUNDRED
                    out.append(
                        _finding(
                            Kind.STOCK_INCREASE_WITHOUT_RECEIPT,
                            Severity.CRITICAL
                            if pct > t.stock_increase_critical_pct
                            else Severity.WARNING,
                            day,
                            expected,
                            day.opening,
                            diff,
                            pct,
                            f"Estoque inicial de {day.opening:.3f}L é maior que o "
                            f"esperado ({expected:.3f}L do dia anterior) sem entrada "
                            f"declarada. Diferença: {diff:.3f}L ({pct:.2f}%)",
                        )
                    )
            lowest = min(day.closing_physical, day.closing_book)
            if lowest < 0:
                out.append(
                    _finding(
                        Kind.NEGATIVE_STOCK,
                        Severity.CRITICAL,
                        day,
                        ZERO,
                        lowest,
                        lowest,
                        HUNDRED,
                        f"Estoque negativo: físico={day.closing_physical:.3f}L, "
                        f"escritural={day.closing_book:.3f}L",
                    )
                )
    return out


def _check_balance(days, t: AuditThresholds, ticker=None) -> list[Inconsistency]:
    out = []
    for day in _walk(days, ticker):
        expected = day.opening + day.receipts
        diff = day.available - expected
        if abs(diff) > t.min_diff:
            pct = _pct(diff, expected)
            out.append(
                _finding(
                    Kind.AVAILABLE_MISMATCH,
                    Severity.CRITICAL
                    if pct > t.sum_mismatch_critical_pct
                    else Severity.WARNING,
                    day,
                    expected,
                    day.available,
                    diff,
                    pct,
                    f"Volume disponível {day.available:.3f}L difere de estoque "
                    f"inicial + entradas ({expected:.3f}L)",
                )
            )
        expected = day.available - day.sales - day.loss + day.surplus
        diff = day.closing_physical - expected
        if abs(diff) > t.min_diff:
            pct = _pct(diff, expected)
            out.append(
                _finding(
                    Kind.CLOSING_MISMATCH,
                    Severity.CRITICAL
                    if pct > t.sum_mismatch_critical_pct
                    else Severity.WARNING,
                    day,
                    expected,
                    day.closing_physical,
                    diff,
                    pct,
                    f"Fechamento físico {day.closing_physical:.3f}L difere do "
                    f"calculado ({expected:.3f}L)",
                )
            )
    return out


def _check_loss_surplus(days, t: AuditThresholds, ticker=None) -> list[Inconsistency]:
    out = []
    for day in _walk(days, ticker):
        if day.available <= 0:
            continue
        checks = (
            (Kind.LOSS_OVER_LIMIT, day.loss, t.loss_limit(day.product_code), "Perda"),
            (
                Kind.SURPLUS_OVER_LIMIT,
                day.surplus,
                t.surplus_limit(day.product_code),
                "Sobra",
            ),
        )
        for kind, qty, limit, label in checks:
            pct = qty / day.available * HUNDRED
            if pct <= limit:
                continue
            allowed = day.available * limit / HUNDRED
            out.append(
                _finding(
                    kind,
                    Severity.CRITICAL
                    if pct > limit * t.critical_factor
                    else Severity.WARNING,
                    day,
                    allowed,
                    qty,
                    qty - allowed,
                    pct,
                    f"{label} de {qty:.3f}L ({pct:.2f}%) acima do limite de "
                    f"{limit}% sobre {day.available:.3f}L disponíveis",
                )
            )
    return out


def _sum_mismatch(kind, day, expected, found, label, t, tank=None):
    diff = found - expected
    if abs(diff) <= t.min_diff:
        return None
    pct = _pct(diff, expected)
    return _finding(
        kind,
        Severity.CRITICAL if pct > t.sum_mismatch_critical_pct else Severity.WARNING,
        day,
        expected,
        found,
        diff,
        pct,
        f"{label}: esperado {expected:.3f}L, encontrado {found:.3f}L "
        f"(diferença {diff:.3f}L, {pct:.2f}%)",
        tank=tank,
    )


def _check_tanks(days, t: AuditThresholds, ticker=None) -> list[Inconsistency]:
    out = []
    for day in _walk(days, ticker):
        if not day.tanks:
            continue
        tank_sales = sum((tk.sales for tk in day.tanks), ZERO)
        tank_receipts = sum((tk.receipts for tk in day.tanks), ZERO)
        for expected, found, label in (
            (day.sales, tank_sales, "Vendas: soma dos tanques x total do produto"),
            (day.receipts, tank_receipts, "Entradas: soma dos tanques x total do produto"),
        ):
            hit = _sum_mismatch(Kind.TANK_SUM_MISMATCH, day, expected, found, label, t)
            if hit is not None:
                out.append(hit)
    return out


def _check_nozzles(days, t: AuditThresholds, ticker=None) -> list[Inconsistency]:
    out = []
    for day in _walk(days, ticker):
        for tank in day.tanks:
            if not tank.nozzles:
                continue
            nozzle_sales = sum((n.sales for n in tank.nozzles), ZERO)
            hit = _sum_mismatch(
                Kind.NOZZLE_SUM_MISMATCH,
                day,
                tank.sales,
                nozzle_sales,
                f"Tanque {tank.tank}: soma dos bicos x vendas do tanque",
                t,
                tank=tank.tank,
            )
            if hit is not None:
                out.append(hit)
    return out


def _doc_totals(sales: Iterable[FuelSale], direction: Direction, cfops: tuple[str, ...]):
    totals: dict[tuple[date, str], list] = {}
    for sale in sales:
        if sale.direction is not direction or sale.cfop not in cfops:
            continue
        entry = totals.setdefault((sale.movement_date, sale.product_code), [ZERO, []])
        entry[0] += sale.quantity
        if sale.access_key and sale.access_key not in entry[1]:
            entry[1].append(sale.access_key)
    return totals


def _tolerance(qty: Decimal, t: AuditThresholds) -> Decimal:
    return max(qty * t.fuel_doc_tolerance_pct / HUNDRED, t.fuel_doc_tolerance_abs)


def _check_documents(
    days, sales: list[FuelSale], t: AuditThresholds, ticker=None
) -> list[Inconsistency]:
    out = []
    outbound = _doc_totals(sales, Direction.OUTBOUND, t.fuel_sale_cfops)
    inbound = _doc_totals(sales, Direction.INBOUND, t.fuel_entry_cfops)
    for day in _walk(days, ticker):
        key = (day.movement_date, day.product_code)
        docs = outbound.get(key)
        if docs is None:
            if day.sales > 0:
                out.append(
                    _finding(
                        Kind.SALES_DOCUMENT_MISMATCH,
                        Severity.WARNING,
                        day,
                        day.sales,
                        ZERO,
                        day.sales,
                        HUNDRED,
                        f"Vendas de {day.sales:.3f}L declaradas no 1300 sem "
                        f"documento fiscal de venda do produto nesta data",
                    )
                )
        else:
            qty, keys = docs
            diff = abs(day.sales - qty)
            pct = diff / day.sales * HUNDRED if day.sales > 0 else HUNDRED
            if diff > _tolerance(day.sales, t):
                out.append(
                    _finding(
                        Kind.SALES_DOCUMENT_MISMATCH,
                        Severity.CRITICAL
                        if pct > t.doc_mismatch_critical_pct
                        else Severity.WARNING,
                        day,
                        day.sales,
                        qty,
                        diff,
                        pct,
                        f"Vendas declaradas ({day.sales:.3f}L) divergem dos "
                        f"documentos fiscais ({qty:.3f}L). Diferença: {diff:.3f}L "
                        f"({pct:.2f}%). {len(keys)} documento(s).",
                        references=keys[:MAX_REFERENCES],
                    )
                )

        if day.receipts > 0:
            entry_qty = inbound.get(key, (ZERO, []))[0]
            diff = abs(day.receipts - entry_qty)
            if entry_qty == 0 and diff > _tolerance(day.receipts, t):
                out.append(
                    _finding(
                        Kind.RECEIPT_WITHOUT_DOCUMENT,
                        Severity.WARNING,
                        day,
                        ZERO,
                        day.receipts,
                        day.receipts,
                        HUNDRED,
                        f"Entrada de {day.receipts:.3f}L declarada no 1300 sem "
                        f"nota fiscal de entrada do produto nesta data",
                    )
                )
    return out


def _check_variation(groups, t: AuditThresholds, ticker=None) -> list[Inconsistency]:
    """Sales far from the rolling mean of the previous days.

    Uses the z-score against the previous ``fuel_history_window`` days.  A
    flat history has no spread, so there the relative deviation from the
    mean is compared with ``fuel_variation_pct`` instead.
    """
    out = []
    limit = float(t.fuel_zscore)
    pct_limit = float(t.fuel_variation_pct)
    factor = float(t.critical_factor)
    for movs in groups.values():
        dated = [d for d in movs if d.movement_date is not None]
        if len(dated) <= t.fuel_history_min:
            continue
        series = pd.Series([float(d.sales) for d in dated])
        window = series.rolling(t.fuel_history_window, min_periods=t.fuel_history_min)
        mean = window.mean().shift(1)
        std = window.std().shift(1)
        for idx, day in enumerate(_walk(dated, ticker)):
            mu, sigma = mean.iloc[idx], std.iloc[idx]
            if pd.isna(mu) or pd.isna(sigma):
                continue
            value = series.iloc[idx]
            if sigma > abs(mu) * FLAT_SPREAD:
                z = (value - mu) / sigma
                if abs(z) <= limit:
                    continue
                critical = abs(z) > limit * factor
                detail = f"z={z:.1f}"
            else:
                if mu == 0:
                    continue
                rel = abs(value - mu) / abs(mu) * 100
                if rel <= pct_limit:
                    continue
                critical = rel > pct_limit * factor
                detail = f"histórico constante, variação de {rel:.1f}%"
            expected = Decimal(str(round(mu, 3)))
            diff = day.sales - expected
            out.append(
                _finding(
                    Kind.ANOMALOUS_VARIATION,
                    Severity.CRITICAL if critical else Severity.WARNING,
                    day,
                    expected,
                    day.sales,
                    diff,
                    _pct(diff, expected),
                    f"Vendas de {day.sales:.3f}L fora do padrão dos dias "
                    f"anteriores (média {mu:.3f}L, {detail})",
                )
            )
    return out


# ────────────────────────── public API ──────────────────────────
def audit_fuel(
    days: Iterable[FuelProductDay],
    sales: Iterable[FuelSale] | None = None,
    thresholds: AuditThresholds | None = None,
    *,
    cancel: CancelToken | None = None,
) -> list[Inconsistency]:
    """Run every fuel check over the product-day records of a period.

    Parameters
    ----------
    days:
        Product-day records (1300) with their tanks (1310) and nozzles (1320).
    sales:
        Document lines used to cross-check declared sales and receipts.
        When ``None`` the document checks are skipped.
    thresholds:
        Tolerances; defaults to :class:`AuditThresholds` built from the
        environment.
    """
    t = thresholds or AuditThresholds()
    days = list(days)
    groups = _by_product(days)
    checks = [
        lambda tk: _check_stock(groups, t, tk),
        lambda tk: _check_balance(days, t, tk),
        lambda tk: _check_loss_surplus(days, t, tk),
        lambda tk: _check_tanks(days, t, tk),
        lambda tk: _check_nozzles(days, t, tk),
    ]
    if sales is not None:
        sales = list(sales)
        checks.append(lambda tk: _check_documents(days, sales, t, tk))
    checks.append(lambda tk: _check_variation(groups, t, tk))

    # every check walks the product-days once
    ticker = ProgressTicker(len(days) * len(checks), PROGRESS_STEP, None, cancel)
    found: list[Inconsistency] = []
    for check in checks:
        if cancel is not None:
            cancel.raise_if_cancelled()
        found.extend(check(ticker))
    log.info(
        "Fuel audit: %d product-day record(s), %d inconsistency(ies)",
        len(days),
        len(found),
    )
    return found


def audit_ledger_fuel(
    ledger: LedgerFile,
    invoices: Iterable[InvoiceDocument] | None = None,
    thresholds: AuditThresholds | None = None,
    *,
    cancel: CancelToken | None = None,
) -> list[Inconsistency]:
    """Audit the fuel records of a ledger against its own documents, or
    against ``invoices`` when given."""
    if invoices is None:
        sales = fuel_sales_from_ledger(ledger)
    else:
        cnpj = ledger.header.cnpj if ledger.header else None
        sales = fuel_sales_from_invoices(invoices, cnpj)
    return audit_fuel(ledger.fuel_days, sales, thresholds, cancel=cancel)


def compare_fuel_sales(
    days: Iterable[FuelProductDay],
    sales: Iterable[FuelSale],
    thresholds: AuditThresholds | None = None,
) -> list[FuelSalesComparison]:
    """Declared sales per product-day next to NF-e and NFC-e volumes."""
    t = thresholds or AuditThresholds()
    docs: dict[tuple[date, str], list[FuelSale]] = defaultdict(list)
    for sale in sales:
        if sale.direction is Direction.OUTBOUND and sale.cfop in t.fuel_sale_cfops:
            docs[(sale.movement_date, sale.product_code)].append(sale)

    out = []
    for day in days:
        row = FuelSalesComparison(day.product_code, day.movement_date, day.sales)
        for sale in docs.get((day.movement_date, day.product_code), []):
            if sale.is_nfce:
                row.nfce += sale.quantity
            else:
                row.nfe += sale.quantity
            row.documents.append(sale)
        out.append(row)
    return out


def summarize_inconsistencies(items: Iterable[Inconsistency]) -> dict:
    """Totals by kind and by severity plus the critical findings."""
    items = list(items)
    by_kind: dict[str, int] = {}
    by_severity = {s.value: 0 for s in Severity}
    for inc in items:
        by_kind[inc.kind.value] = by_kind.get(inc.kind.value, 0) + 1
        by_severity[inc.severity.value] += 1
    return {
        "total": len(items),
        "by_kind": by_kind,
        "by_severity": by_severity,
        "critical": [i for i in items if i.severity is Severity.CRITICAL],
    }


_DESCRIPTIONS = {
    Kind.STOCK_INCREASE_WITHOUT_RECEIPT: "Estoque inicial maior que o esperado sem nota de entrada",
    Kind.LOSS_OVER_LIMIT: "Perda de combustível acima do limite legal",
    Kind.SURPLUS_OVER_LIMIT: "Sobra de combustível acima do limite aceitável",
    Kind.TANK_SUM_MISMATCH: "Divergência entre soma dos tanques e total do produto",
    Kind.NOZZLE_SUM_MISMATCH: "Divergência entre soma dos bicos e vendas do tanque",
    Kind.SALES_DOCUMENT_MISMATCH: "Divergência entre vendas declaradas e documentos fiscais",
    Kind.RECEIPT_WITHOUT_DOCUMENT: "Entrada de combustível sem nota fiscal",
    Kind.NEGATIVE_STOCK: "Estoque de combustível ficou negativo",
    Kind.ANOMALOUS_VARIATION: "Variação de estoque fora do padrão histórico",
    Kind.AVAILABLE_MISMATCH: "Disponível diferente de estoque inicial + entradas",
    Kind.CLOSING_MISMATCH: "Fechamento físico diferente do calculado",
}


def describe_kind(kind: InconsistencyKind) -> str:
    return _DESCRIPTIONS.get(kind, kind.value)

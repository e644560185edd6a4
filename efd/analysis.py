"""Plain payload in, plain result out: the boundary used by front-ends.

Every analysis takes a dict of builtins (lists of records, numbers as
numbers or ledger-formatted strings) and returns JSON-friendly builtins.
Failures come back as ``{"error": "<message>"}`` instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import fields as dc_fields
from decimal import Decimal
from typing import Any, Callable

from efd.audit.abc import classify_abc
from efd.audit.compare import compare_by_day_cfop, grade_risk
from efd.audit.fuel import FuelSale, audit_fuel, summarize_inconsistencies
from efd.audit.gaps import find_sequence_gaps, gap_inconsistencies
from efd.audit.orphans import document_key, orphan_inconsistencies, reconcile
from efd.audit.taxes import aggregate_taxes
from efd.constants import AuditThresholds
from efd.models import FuelProductDay, FuelTankDay, NozzleReading, as_plain
from efd.parsing.codes import Direction
from efd.parsing.money import parse_decimal
from efd.parsing.nfe import parse_invoice_batch
from efd.parsing.sped import parse_ledger
from efd.parsing.utils import to_date
from efd.utils import CancelToken

log = logging.getLogger(__name__)

Payload = dict[str, Any]


def thresholds_from_payload(raw: dict | None) -> AuditThresholds:
    """Build :class:`AuditThresholds` from a plain mapping (unknown keys are
    rejected)."""
    if not raw:
        return AuditThresholds()
    known = {f.name: f for f in dc_fields(AuditThresholds)}
    kwargs: dict[str, Any] = {}
    for name, value in raw.items():
        if name not in known:
            raise ValueError(f"unknown threshold: {name}")
        default = getattr(AuditThresholds(), name)
        if isinstance(default, Decimal):
            kwargs[name] = parse_decimal(value)
        elif isinstance(default, dict):
            kwargs[name] = {str(k): parse_decimal(v) for k, v in value.items()}
        elif isinstance(default, tuple):
            kwargs[name] = tuple(str(v) for v in value)
        else:
            kwargs[name] = int(value)
    return AuditThresholds(**kwargs)


def _movement(raw: dict) -> dict:
    return {
        name: parse_decimal(raw.get(name))
        for name in (
            "opening",
            "receipts",
            "available",
            "sales",
            "closing_book",
            "loss",
            "surplus",
            "closing_physical",
        )
    }


def fuel_day_from_dict(raw: dict) -> FuelProductDay:
    """Rebuild a product-day with its tanks and nozzles from plain data."""
    code = str(raw.get("product_code") or "")
    day = to_date(raw.get("movement_date"))
    product = FuelProductDay(0, (), product_code=code, movement_date=day, **_movement(raw))
    for traw in raw.get("tanks") or []:
        tank = FuelTankDay(
            0,
            (),
            product_code=code,
            movement_date=day,
            tank=str(traw.get("tank") or ""),
            **_movement(traw),
        )
        for nraw in traw.get("nozzles") or []:
            tank.nozzles.append(
                NozzleReading(
                    0,
                    (),
                    product_code=code,
                    movement_date=day,
                    tank=tank.tank,
                    nozzle=str(nraw.get("nozzle") or ""),
                    closing_meter=parse_decimal(nraw.get("closing_meter")),
                    opening_meter=parse_decimal(nraw.get("opening_meter")),
                    sales=parse_decimal(nraw.get("sales")),
                )
            )
        product.tanks.append(tank)
    return product


def fuel_sale_from_dict(raw: dict) -> FuelSale:
    return FuelSale(
        product_code=str(raw.get("product_code") or ""),
        movement_date=to_date(raw.get("movement_date")),
        quantity=parse_decimal(raw.get("quantity")),
        value=parse_decimal(raw.get("value")),
        direction=Direction.parse(str(raw.get("direction", "1"))) or Direction.OUTBOUND,
        cfop=str(raw.get("cfop") or ""),
        access_key=str(raw.get("access_key") or ""),
    )


# ────────────────────────── analyses ──────────────────────────
def _parse(payload: Payload, cancel: CancelToken | None) -> Any:
    ledger = parse_ledger(
        payload["content"], cancel=cancel, strict=bool(payload.get("strict"))
    )
    start, end = ledger.period
    return {
        "company": ledger.header.company_name if ledger.header else "",
        "cnpj": ledger.header.cnpj if ledger.header else "",
        "start": start,
        "end": end,
        "lines": ledger.line_count,
        "documents": len(ledger.documents),
        "inbound": len(ledger.inbound),
        "outbound": len(ledger.outbound),
        "fuel_days": len(ledger.fuel_days),
        "unsupported_tags": dict(ledger.unsupported_tags),
        "warnings": ledger.warnings,
    }


def _gaps(payload: Payload, cancel: CancelToken | None) -> Any:
    gaps = find_sequence_gaps(payload.get("entries") or [], cancel=cancel)
    return {"gaps": gaps, "inconsistencies": gap_inconsistencies(gaps)}


def _orphans(payload: Payload, cancel: CancelToken | None) -> Any:
    result = reconcile(
        payload.get("ledger") or [], payload.get("invoices") or [], cancel=cancel
    )
    return {
        "invoice_without_ledger": [document_key(e) for e in result.invoice_without_ledger],
        "ledger_without_invoice": [document_key(e) for e in result.ledger_without_invoice],
        "ledger_without_key": len(result.ledger_without_key),
        "matched": len(result.matched_ledger),
        "inconsistencies": orphan_inconsistencies(result),
    }


def _abc(payload: Payload, cancel: CancelToken | None) -> Any:
    t = thresholds_from_payload(payload.get("thresholds"))
    return {"rows": classify_abc(payload.get("items") or [], t, cancel=cancel)}


def _taxes(payload: Payload, cancel: CancelToken | None) -> Any:
    t = thresholds_from_payload(payload.get("thresholds"))
    report = aggregate_taxes(
        payload.get("documents") or [],
        payload.get("totals") or [],
        payload.get("items") or [],
        t,
        cancel=cancel,
    )
    return {
        "pis_cofins_missing": report.pis_cofins_missing,
        **{
            tax.value: {
                "total_debit": s.total_debit,
                "total_credit": s.total_credit,
                "balance": s.balance,
                "top_cfops": [
                    {"cfop": c.cfop, "debit": c.debit, "credit": c.credit, "total": c.total}
                    for c in s.top_cfops
                ],
            }
            for tax, s in report.taxes.items()
        },
    }


def _fuel(payload: Payload, cancel: CancelToken | None) -> Any:
    t = thresholds_from_payload(payload.get("thresholds"))
    days = [fuel_day_from_dict(d) for d in payload.get("days") or []]
    sales = payload.get("sales")
    if sales is not None:
        sales = [fuel_sale_from_dict(s) for s in sales]
    found = audit_fuel(days, sales, t, cancel=cancel)
    return {"inconsistencies": found, "summary": summarize_inconsistencies(found)}


def _compare(payload: Payload, cancel: CancelToken | None) -> Any:
    t = thresholds_from_payload(payload.get("thresholds"))
    ledger = parse_ledger(payload["content"], cancel=cancel)
    batch = parse_invoice_batch(payload.get("invoices") or [], cancel=cancel)
    comparison = compare_by_day_cfop(ledger, batch.documents, t)
    rows = []
    for row in comparison.rows:
        level, score = grade_risk(row, t)
        rows.append({**as_plain(row), "risk": level.value, "score": score})
    return {
        "rows": rows,
        "total_ledger": comparison.total_ledger,
        "total_invoice": comparison.total_invoice,
        "ignored_invoices": batch.ignored,
    }


ANALYSES: dict[str, Callable[[Payload, CancelToken | None], Any]] = {
    "parse": _parse,
    "gaps": _gaps,
    "orphans": _orphans,
    "abc": _abc,
    "taxes": _taxes,
    "fuel": _fuel,
    "compare": _compare,
}


def run_analysis(
    name: str, payload: Payload, *, cancel: CancelToken | None = None
) -> dict:
    """Run analysis ``name`` on ``payload`` and return a plain dict."""
    try:
        handler = ANALYSES[name]
        return as_plain(handler(payload or {}, cancel))
    except KeyError as exc:
        msg = f"unknown analysis {name!r}" if name not in ANALYSES else f"missing field {exc}"
        log.warning("Analysis %s failed: %s", name, msg)
        return {"error": msg}
    except Exception as exc:
        log.warning("Analysis %s failed: %s", name, exc)
        return {"error": str(exc) or exc.__class__.__name__}

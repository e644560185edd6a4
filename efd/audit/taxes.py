"""Tax debit/credit totals per tax type, direction and CFOP."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from efd.constants import PROGRESS_STEP, AuditThresholds
from efd.models import LedgerFile
from efd.parsing.codes import Direction, TaxType
from efd.parsing.money import parse_decimal
from efd.utils import CancelToken, ProgressTicker

log = logging.getLogger(__name__)

ZERO = Decimal("0")
NO_CFOP = "0000"


@dataclass
class CfopTax:
    cfop: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.debit + self.credit


@dataclass
class TaxSummary:
    tax_type: TaxType
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO
    by_cfop: dict[str, CfopTax] = field(default_factory=dict)
    top_cfops: list[CfopTax] = field(default_factory=list)

    @property
    def balance(self) -> Decimal:
        """Debit minus credit; positive means tax to pay."""
        return self.total_debit - self.total_credit

    def add(self, direction: Direction, cfop: str, value: Decimal) -> None:
        bucket = self.by_cfop.setdefault(cfop, CfopTax(cfop))
        if direction is Direction.INBOUND:
            self.total_credit += value
            bucket.credit += value
        else:
            self.total_debit += value
            bucket.debit += value


@dataclass
class TaxReport:
    taxes: dict[TaxType, TaxSummary]
    # no PIS/COFINS on any C170: taxpayer likely outside that regime
    pis_cofins_missing: bool = False
    skipped_records: int = 0

    def __getitem__(self, tax: TaxType | str) -> TaxSummary:
        return self.taxes[TaxType(tax)]


def _get(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def _direction_map(documents: Iterable) -> dict[str, Direction]:
    out: dict[str, Direction] = {}
    for doc in documents:
        if isinstance(doc, (tuple, list)):
            doc_id, raw = doc
        else:
            doc_id = _get(doc, "id", "document_id")
            raw = _get(doc, "direction", "type")
        direction = raw if isinstance(raw, Direction) else Direction.parse(
            None if raw is None else str(raw)
        )
        if doc_id is not None and direction is not None:
            out[str(doc_id)] = direction
    return out


def aggregate_taxes(
    documents: Iterable,
    totals: Iterable,
    items: Iterable,
    thresholds: AuditThresholds | None = None,
    *,
    cancel: CancelToken | None = None,
) -> TaxReport:
    """Sum taxes as debit (outbound) or credit (inbound).

    ICMS and IPI come from the per-CFOP totals (C190), PIS and COFINS from
    the item lines (C170, missing CFOP grouped as ``0000``).  Records whose
    document is unknown or has no valid direction are skipped, as are zero
    values.  Each tax keeps its top CFOPs by debit + credit.
    """
    t = thresholds or AuditThresholds()
    directions = _direction_map(documents)
    totals, items = list(totals), list(items)
    ticker = ProgressTicker(len(totals) + len(items), PROGRESS_STEP, None, cancel)
    taxes = {tax: TaxSummary(tax) for tax in TaxType}
    skipped = 0

    def _feed(records, sources, default_cfop):
        nonlocal skipped
        for rec in records:
            ticker.tick()
            direction = directions.get(str(_get(rec, "document_id")))
            if direction is None:
                skipped += 1
                continue
            cfop = str(_get(rec, "cfop") or "").strip() or (default_cfop or "")
            for tax, names in sources:
                value = _get(rec, *names)
                # C170 carries TaxValues, payloads carry plain numbers
                amount = parse_decimal(getattr(value, "value", value))
                if amount:
                    taxes[tax].add(direction, cfop, amount)

    _feed(
        totals,
        ((TaxType.ICMS, ("icms_value",)), (TaxType.IPI, ("ipi_value",))),
        None,
    )
    _feed(
        items,
        ((TaxType.PIS, ("pis_value", "pis")), (TaxType.COFINS, ("cofins_value", "cofins"))),
        NO_CFOP,
    )

    for summary in taxes.values():
        ranked = sorted(summary.by_cfop.values(), key=lambda c: c.cfop)
        ranked.sort(key=lambda c: c.total, reverse=True)
        summary.top_cfops = ranked[: t.top_cfops]

    missing = (
        taxes[TaxType.PIS].total_debit + taxes[TaxType.PIS].total_credit == 0
        and taxes[TaxType.COFINS].total_debit + taxes[TaxType.COFINS].total_credit == 0
    )
    if missing:
        log.info("No PIS/COFINS values in %d item line(s)", len(items))
    if skipped:
        log.debug("%d record(s) without a known document direction skipped", skipped)
    return TaxReport(taxes=taxes, pis_cofins_missing=missing, skipped_records=skipped)


def tax_inputs_from_ledger(ledger: LedgerFile) -> tuple[list, list, list]:
    """(documents, totals, items) of a parsed ledger, cancelled excluded."""
    docs = [d for d in ledger.documents if not d.is_cancelled]
    totals = [tot for d in docs for tot in d.totals]
    items = [it for d in docs for it in d.items]
    return docs, totals, items


def ledger_taxes(
    ledger: LedgerFile,
    thresholds: AuditThresholds | None = None,
    *,
    cancel: CancelToken | None = None,
) -> TaxReport:
    return aggregate_taxes(
        *tax_inputs_from_ledger(ledger), thresholds=thresholds, cancel=cancel
    )

"""Emit ledger lines: parsed records, invoices as C100/C170, item stripping."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from efd.models import InvoiceDocument, LedgerRecord
from efd.parsing.codes import Direction, DocumentStatus
from efd.parsing.money import format_number
from efd.parsing.utils import clean_field, format_sped_date, only_digits

log = logging.getLogger(__name__)

LINE_END = "\r\n"
ITEM_TAG = "C170"
ITEM_CHILD_TAGS = tuple(f"C17{n}" for n in range(1, 10))


def render_line(fields: Iterable[object]) -> str:
    """``["C990", 12]`` → ``|C990|12|``; embedded pipes are dropped."""
    return "|" + "|".join(clean_field("" if f is None else str(f)) for f in fields) + "|"


def render_record(record: LedgerRecord) -> str:
    """Re-emit a parsed record from its raw fields, byte for byte."""
    return "|" + "|".join(record.fields) + "|"


def _num(value: Decimal | None, decimals: int = 2) -> str:
    return format_number(value, decimals)


def invoice_to_records(
    invoice: InvoiceDocument, taxpayer_cnpj: str
) -> list[list[str]]:
    """C100 followed by one C170 per item, as field lists.

    Issued by the taxpayer: ``IND_EMIT=0`` and ``IND_OPER`` from ``tpNF``.
    Issued by a third party: ``IND_EMIT=1`` and ``IND_OPER=0``.
    """
    own = only_digits(invoice.issuer_cnpj) == only_digits(taxpayer_cnpj)
    if own:
        ind_emit = "0"
        ind_oper = "1" if invoice.direction is Direction.OUTBOUND else "0"
        participant = invoice.recipient_cnpj
    else:
        ind_emit = "1"
        ind_oper = "0"
        participant = invoice.issuer_cnpj
    day = format_sped_date(invoice.issue_date)

    c100 = [
        "C100",
        ind_oper,
        ind_emit,
        clean_field(participant),
        invoice.model or "55",
        DocumentStatus.REGULAR.value,
        invoice.series,
        invoice.number,
        invoice.access_key,
        day,
        day,
        _num(invoice.total_value),
        invoice.payment_indicator or "0",
        _num(invoice.discount),
        _num(Decimal("0")),
        _num(invoice.merchandise_value),
        invoice.freight_mode or "9",
        _num(invoice.freight),
        _num(invoice.insurance),
        _num(invoice.other_charges),
        _num(invoice.icms_base),
        _num(invoice.icms_value),
        _num(invoice.icms_st_base),
        _num(invoice.icms_st_value),
        _num(invoice.ipi_value),
        _num(invoice.pis_value),
        _num(invoice.cofins_value),
        _num(Decimal("0")),
        _num(Decimal("0")),
    ]
    records = [c100]
    for idx, item in enumerate(invoice.items, start=1):
        records.append(
            [
                "C170",
                str(idx),
                clean_field(item.product_code),
                clean_field(item.description),
                _num(item.quantity, 5),
                clean_field(item.unit),
                _num(item.value),
                _num(item.discount),
                "0",
                item.cst_icms,
                item.cfop,
                "",
                _num(item.icms.base),
                _num(item.icms.rate),
                _num(item.icms.value),
                _num(item.icms_st.base),
                _num(item.icms_st.rate),
                _num(item.icms_st.value),
                "0",
                "",
                "",
                _num(item.ipi.base),
                _num(item.ipi.rate),
                _num(item.ipi.value),
                "",
                _num(item.pis.base),
                _num(item.pis.rate),
                _num(Decimal("0"), 3),
                _num(Decimal("0"), 4),
                _num(item.pis.value),
                "",
                _num(item.cofins.base),
                _num(item.cofins.rate),
                _num(Decimal("0"), 3),
                _num(Decimal("0"), 4),
                _num(item.cofins.value),
                "",
                _num(Decimal("0")),
            ]
        )
    return records


def render_invoice(invoice: InvoiceDocument, taxpayer_cnpj: str) -> str:
    return LINE_END.join(render_line(r) for r in invoice_to_records(invoice, taxpayer_cnpj))


@dataclass
class StripResult:
    text: str
    removed: dict[str, int] = field(default_factory=dict)
    removed_9900: int = 0

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())


def _tag(line: str) -> str:
    parts = line.strip().split("|")
    return parts[1] if len(parts) > 2 else ""


def _count(line: str, idx: int) -> int:
    parts = line.strip().split("|")
    try:
        return int(parts[idx])
    except (IndexError, ValueError):
        return 0


def strip_item_records(text: str) -> StripResult:
    """Drop C170 and its children (C171-C179) and fix the file counters.

    ``C990`` loses the removed lines, ``9900`` rows of removed tags are
    decremented (and dropped at zero), ``9990`` loses the dropped ``9900``
    rows and ``9999`` loses everything removed.  Lines are joined with CRLF.
    """
    removable = (ITEM_TAG,) + ITEM_CHILD_TAGS
    removed = {tag: 0 for tag in removable}
    kept: list[str] = []
    for line in text.splitlines():
        tag = _tag(line)
        if tag in removed:
            removed[tag] += 1
            continue
        kept.append(line)

    total = sum(removed.values())
    if total == 0:
        return StripResult(text, {})

    dropped_9900 = 0
    counted: list[str] = []
    for line in kept:
        tag = _tag(line)
        if tag == "C990":
            line = render_line(["C990", max(0, _count(line, 2) - total)])
        elif tag == "9900":
            reg = line.strip().split("|")[2] if len(line.strip().split("|")) > 3 else ""
            if reg in removed:
                new_count = _count(line, 3) - removed[reg]
                if new_count <= 0:
                    dropped_9900 += 1
                    continue
                line = render_line(["9900", reg, new_count])
        counted.append(line)

    out = []
    for line in counted:
        tag = _tag(line)
        if tag == "9990":
            line = render_line(["9990", max(0, _count(line, 2) - dropped_9900)])
        elif tag == "9999":
            line = render_line(["9999", max(0, _count(line, 2) - total - dropped_9900)])
        out.append(line)

    log.info("Removed %d item line(s) and %d 9900 row(s)", total, dropped_9900)
    return StripResult(
        LINE_END.join(out),
        {k: v for k, v in removed.items() if v},
        dropped_9900,
    )

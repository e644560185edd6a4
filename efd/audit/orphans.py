"""Ledger vs invoice documents joined on the access key."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from efd.constants import PROGRESS_STEP
from efd.models import (
    Document,
    Inconsistency,
    InconsistencyKind,
    InvoiceDocument,
    LedgerFile,
    Severity,
)
from efd.parsing.utils import is_valid_access_key
from efd.utils import CancelToken, ProgressTicker

log = logging.getLogger(__name__)

ZERO = Decimal("0")


def document_key(entry: Any) -> str:
    """Access key of a ledger document, invoice, mapping or bare string."""
    if isinstance(entry, str):
        return entry.strip()
    if isinstance(entry, dict):
        return str(entry.get("access_key") or entry.get("chave") or "").strip()
    return (getattr(entry, "access_key", "") or "").strip()


@dataclass
class ReconciliationResult:
    """Partition of both inputs.

    ``matched_ledger + ledger_without_invoice + ledger_without_key`` holds
    every ledger entry exactly once (same for the invoice side).
    """

    invoice_without_ledger: list = field(default_factory=list)
    ledger_without_invoice: list = field(default_factory=list)
    ledger_without_key: list = field(default_factory=list)
    invoices_without_key: list = field(default_factory=list)
    matched_ledger: list = field(default_factory=list)
    matched_invoices: list = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.invoice_without_ledger or self.ledger_without_invoice)


def _split(entries: list, ticker: ProgressTicker) -> tuple[list, list, set[str]]:
    keyed, keyless, keys = [], [], set()
    for entry in entries:
        ticker.tick()
        key = document_key(entry)
        if is_valid_access_key(key):
            keyed.append((key, entry))
            keys.add(key)
        else:
            keyless.append(entry)
    return keyed, keyless, keys


def reconcile(
    ledger_docs: Iterable,
    invoice_docs: Iterable,
    *,
    cancel: CancelToken | None = None,
) -> ReconciliationResult:
    """Plain set difference over the access key, in both directions.

    Entries keep the order of their own input.  Ledger entries without a
    well-formed 44 digit key cannot be matched and are returned in
    ``ledger_without_key``.
    """
    ledger_docs, invoice_docs = list(ledger_docs), list(invoice_docs)
    ticker = ProgressTicker(
        len(ledger_docs) + len(invoice_docs), PROGRESS_STEP, None, cancel
    )
    ledger_keyed, ledger_keyless, ledger_keys = _split(ledger_docs, ticker)
    invoice_keyed, invoice_keyless, invoice_keys = _split(invoice_docs, ticker)

    result = ReconciliationResult(
        ledger_without_key=ledger_keyless, invoices_without_key=invoice_keyless
    )
    for key, entry in invoice_keyed:
        if key in ledger_keys:
            result.matched_invoices.append(entry)
        else:
            result.invoice_without_ledger.append(entry)
    for key, entry in ledger_keyed:
        if key in invoice_keys:
            result.matched_ledger.append(entry)
        else:
            result.ledger_without_invoice.append(entry)

    log.info(
        "Reconciliation: %d invoice(s) not in ledger, %d ledger document(s) "
        "without invoice, %d without key",
        len(result.invoice_without_ledger),
        len(result.ledger_without_invoice),
        len(result.ledger_without_key),
    )
    return result


def reconcile_ledger(
    ledger: LedgerFile,
    invoices: Iterable[InvoiceDocument],
    *,
    include_cancelled: bool = False,
    cancel: CancelToken | None = None,
) -> ReconciliationResult:
    """Reconcile a parsed ledger; cancelled documents are left out by default
    because their invoices are never authorized."""
    docs = [
        d for d in ledger.documents if include_cancelled or not d.is_cancelled
    ]
    return reconcile(docs, invoices, cancel=cancel)


def _value(entry: Any) -> Decimal:
    val = getattr(entry, "total_value", None)
    if val is None and isinstance(entry, dict):
        val = entry.get("total_value")
    return Decimal(str(val)) if val is not None else ZERO


def _date(entry: Any):
    if isinstance(entry, (Document, InvoiceDocument)):
        return entry.issue_date
    return None


def _label(entry: Any) -> str:
    number = getattr(entry, "number", "") or ""
    key = document_key(entry)
    return f"NF {number} ({key})" if number else key


def orphan_inconsistencies(result: ReconciliationResult) -> list[Inconsistency]:
    out: list[Inconsistency] = []
    for entry in result.invoice_without_ledger:
        value = _value(entry)
        out.append(
            Inconsistency(
                kind=InconsistencyKind.INVOICE_WITHOUT_LEDGER,
                severity=Severity.CRITICAL,
                expected=value,
                found=ZERO,
                difference=value,
                difference_pct=Decimal("100"),
                description=f"{_label(entry)} não escriturada no SPED",
                movement_date=_date(entry),
                references=(document_key(entry),),
            )
        )
    for entry in result.ledger_without_invoice:
        value = _value(entry)
        out.append(
            Inconsistency(
                kind=InconsistencyKind.LEDGER_WITHOUT_INVOICE,
                severity=Severity.WARNING,
                expected=value,
                found=ZERO,
                difference=value,
                difference_pct=Decimal("100"),
                description=f"{_label(entry)} escriturada sem XML correspondente",
                movement_date=_date(entry),
                references=(document_key(entry),),
            )
        )
    for entry in result.ledger_without_key:
        out.append(
            Inconsistency(
                kind=InconsistencyKind.LEDGER_WITHOUT_KEY,
                severity=Severity.INFO,
                expected=ZERO,
                found=ZERO,
                difference=ZERO,
                difference_pct=ZERO,
                description=f"Documento {getattr(entry, 'number', '') or '?'} sem chave de acesso válida",
                movement_date=_date(entry),
            )
        )
    return out

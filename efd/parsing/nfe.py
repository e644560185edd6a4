# File: efd/parsing/nfe.py
# -*- coding: utf-8 -*-
"""
NF-e / NFC-e XML parser
=======================
• parse_invoice()        → InvoiceDocument | None (only authorized documents)
• parse_invoice_batch()  → InvoiceBatch (documents + ignored tally)
• load_invoice_dir()     → batch of every ``*.xml`` below a directory

Accepts the distributed ``nfeProc`` envelope as well as a bare ``NFe``.
Namespaces are matched with ``{*}`` so files saved with or without the
portal namespace parse the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable

from lxml import etree as LET

from efd.constants import PROGRESS_STEP, TRACE
from efd.models import InvoiceDocument, InvoiceItem, TaxValues
from efd.parsing.codes import AUTHORIZED_CSTAT, Direction
from efd.parsing.money import try_decimal
from efd.parsing.utils import is_valid_access_key, only_digits, to_date
from efd.utils import CancelToken, ProgressCallback, ProgressTicker

log = logging.getLogger(__name__)

XML_PARSER = LET.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
ZERO = Decimal("0")


def _t(msg, *args):
    if TRACE:
        log.warning("[TRACE NFE] " + msg, *args)


# ────────────────────────── helpers ──────────────────────────
def _text(el: LET._Element | None) -> str:
    return el.text.strip() if el is not None and el.text else ""


def _find_text(node: LET._Element | None, path: str) -> str:
    if node is None:
        return ""
    return _text(node.find(path))


def _decimal(node: LET._Element | None, path: str) -> Decimal:
    """Decimal value of ``path`` below ``node``; missing/invalid → 0."""
    val = try_decimal(_find_text(node, path))
    return ZERO if val is None else val


def _first_child(node: LET._Element | None) -> LET._Element | None:
    """First element child (``ICMS00``, ``ICMSSN102`` ... inside ``ICMS``)."""
    if node is None:
        return None
    for child in node:
        if isinstance(child.tag, str):
            return child
    return None


def _root(source: Any) -> LET._Element:
    if hasattr(source, "findall"):
        return source
    if isinstance(source, Path):
        return LET.parse(str(source), parser=XML_PARSER).getroot()
    if isinstance(source, str):
        source = source.encode("utf-8")
    if isinstance(source, bytes):
        # the XML declaration may name another encoding; let lxml decide
        return LET.fromstring(source.lstrip(b"\xef\xbb\xbf \r\n\t"), parser=XML_PARSER)
    raise TypeError(f"unsupported invoice source: {type(source).__name__}")


def _access_key(root: LET._Element, inf: LET._Element) -> str:
    key = _find_text(root, ".//{*}protNFe/{*}infProt/{*}chNFe")
    if not key:
        key = only_digits(inf.get("Id", "").replace("NFe", ""))
    return key


def _parse_item(det: LET._Element, idx: int) -> InvoiceItem:
    prod = det.find("{*}prod")
    imposto = det.find("{*}imposto")
    icms = _first_child(imposto.find("{*}ICMS")) if imposto is not None else None
    ipi = imposto.find("{*}IPI/{*}IPITrib") if imposto is not None else None
    pis = _first_child(imposto.find("{*}PIS")) if imposto is not None else None
    cofins = _first_child(imposto.find("{*}COFINS")) if imposto is not None else None

    n_item = det.get("nItem", "")
    cst = _find_text(icms, "{*}CST") or _find_text(icms, "{*}CSOSN")
    orig = _find_text(icms, "{*}orig")
    return InvoiceItem(
        number=int(n_item) if n_item.isdigit() else idx,
        product_code=_find_text(prod, "{*}cProd"),
        description=_find_text(prod, "{*}xProd"),
        cfop=_find_text(prod, "{*}CFOP"),
        quantity=_decimal(prod, "{*}qCom"),
        unit=_find_text(prod, "{*}uCom"),
        value=_decimal(prod, "{*}vProd"),
        discount=_decimal(prod, "{*}vDesc"),
        cst_icms=(orig + cst) if cst and len(cst) == 2 else cst,
        icms=TaxValues(
            _decimal(icms, "{*}vBC"),
            _decimal(icms, "{*}pICMS"),
            _decimal(icms, "{*}vICMS"),
        ),
        icms_st=TaxValues(
            _decimal(icms, "{*}vBCST"),
            _decimal(icms, "{*}pICMSST"),
            _decimal(icms, "{*}vICMSST"),
        ),
        ipi=TaxValues(
            _decimal(ipi, "{*}vBC"), _decimal(ipi, "{*}pIPI"), _decimal(ipi, "{*}vIPI")
        ),
        pis=TaxValues(
            _decimal(pis, "{*}vBC"), _decimal(pis, "{*}pPIS"), _decimal(pis, "{*}vPIS")
        ),
        cofins=TaxValues(
            _decimal(cofins, "{*}vBC"),
            _decimal(cofins, "{*}pCOFINS"),
            _decimal(cofins, "{*}vCOFINS"),
        ),
        # fuel with single phase taxation (ICMS61)
        mono_base=_decimal(icms, "{*}qBCMonoRet"),
        mono_value=_decimal(icms, "{*}vICMSMonoRet"),
    )


def parse_invoice(source: str | bytes | Path | Any) -> InvoiceDocument | None:
    """Parse one invoice; return ``None`` unless it is authorized.

    Authorization is read from ``protNFe/infProt/cStat`` (100 or 150).  A
    document without protocol, with any other status, without a 44 digit
    key or that is not well-formed XML yields ``None``; the caller counts it
    as ignored.  Optional fields default to zero or empty.
    """
    try:
        root = _root(source)
    except (LET.XMLSyntaxError, OSError, ValueError) as exc:
        log.warning("Invalid invoice XML: %s", exc)
        return None

    inf = root.find(".//{*}infNFe")
    if inf is None:
        log.debug("No infNFe element, not an NF-e document")
        return None

    status = _find_text(root, ".//{*}protNFe/{*}infProt/{*}cStat")
    if status not in AUTHORIZED_CSTAT:
        _t("ignored: cStat=%r", status)
        return None

    key = _access_key(root, inf)
    if not is_valid_access_key(key):
        log.warning("Authorized invoice with invalid access key %r", key)
        return None

    ide = inf.find("{*}ide")
    tot = inf.find("{*}total/{*}ICMSTot")
    issued_at = _find_text(ide, "{*}dhEmi") or _find_text(ide, "{*}dEmi")
    items = tuple(
        _parse_item(det, idx) for idx, det in enumerate(inf.findall("{*}det"), start=1)
    )
    doc = InvoiceDocument(
        access_key=key,
        number=_find_text(ide, "{*}nNF"),
        series=_find_text(ide, "{*}serie"),
        model=_find_text(ide, "{*}mod"),
        direction=Direction.parse(_find_text(ide, "{*}tpNF")),
        issue_date=to_date(issued_at[:10]) if issued_at else None,
        issued_at=issued_at,
        issuer_cnpj=_find_text(inf, "{*}emit/{*}CNPJ"),
        recipient_cnpj=_find_text(inf, "{*}dest/{*}CNPJ"),
        status_code=status,
        authorized=True,
        total_value=_decimal(tot, "{*}vNF"),
        merchandise_value=_decimal(tot, "{*}vProd"),
        discount=_decimal(tot, "{*}vDesc"),
        freight=_decimal(tot, "{*}vFrete"),
        insurance=_decimal(tot, "{*}vSeg"),
        other_charges=_decimal(tot, "{*}vOutro"),
        icms_base=_decimal(tot, "{*}vBC"),
        icms_value=_decimal(tot, "{*}vICMS"),
        icms_st_base=_decimal(tot, "{*}vBCST"),
        icms_st_value=_decimal(tot, "{*}vST"),
        ipi_value=_decimal(tot, "{*}vIPI"),
        pis_value=_decimal(tot, "{*}vPIS"),
        cofins_value=_decimal(tot, "{*}vCOFINS"),
        payment_indicator=_find_text(ide, "{*}indPag")
        or _find_text(inf, "{*}pag/{*}detPag/{*}indPag"),
        freight_mode=_find_text(inf, "{*}transp/{*}modFrete"),
        items=items,
    )
    _t("parsed %s (%d items)", key, len(items))
    return doc


@dataclass
class InvoiceBatch:
    """Authorized documents of a batch plus the count of ignored inputs."""

    documents: list[InvoiceDocument] = field(default_factory=list)
    ignored: int = 0
    # one label per input, in input order: the path, or "<input N>"
    sources: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.documents) + self.ignored

    def by_key(self) -> dict[str, InvoiceDocument]:
        return {d.access_key: d for d in self.documents}


def _source_label(src: Any, idx: int) -> str:
    return str(src) if isinstance(src, Path) else f"<input {idx}>"


def parse_invoice_batch(
    sources: Iterable[str | bytes | Path],
    on_progress: ProgressCallback | None = None,
    *,
    cancel: CancelToken | None = None,
) -> InvoiceBatch:
    """Parse many invoices; unauthorized or unreadable ones are tallied."""
    items = list(sources)
    batch = InvoiceBatch()
    ticker = ProgressTicker(len(items), PROGRESS_STEP, on_progress, cancel)
    for idx, src in enumerate(items, start=1):
        doc = parse_invoice(src)
        if doc is None:
            batch.ignored += 1
        else:
            batch.documents.append(doc)
        batch.sources.append(_source_label(src, idx))
        ticker.tick()
    log.info(
        "Invoice batch: %d authorized, %d ignored", len(batch.documents), batch.ignored
    )
    return batch


def load_invoice_dir(
    path: str | Path,
    on_progress: ProgressCallback | None = None,
    *,
    cancel: CancelToken | None = None,
) -> InvoiceBatch:
    """Parse every ``*.xml`` file below ``path`` (recursive, sorted)."""
    files = sorted(Path(path).rglob("*.xml"))
    if not files:
        log.warning("No XML files found in %s", path)
    return parse_invoice_batch(files, on_progress, cancel=cancel)

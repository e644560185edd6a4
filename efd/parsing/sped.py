# File: efd/parsing/sped.py
# -*- coding: utf-8 -*-
"""
EFD ICMS/IPI (SPED Fiscal) parser
=================================
• parse_ledger()       → LedgerFile (documents → items/totals, fuel
                          product-day → tank-day → nozzle readings, ...)
• parse_ledger_file()  → same, reading the file with encoding fallback

The file is pipe delimited, one record per line, every line framed by a
leading and trailing ``|``.  The first field is the record tag.  Parent and
child records are related only by line order, so the parser keeps an
explicit :class:`ParserState` with the currently open parent per tag
instead of module level variables; one state per call keeps the parser
re-entrant.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable

from efd.constants import PROGRESS_STEP, TRACE
from efd.models import (
    CfopTotal,
    Document,
    FuelProductDay,
    FuelTankDay,
    IcmsAssessment,
    IcmsPeriod,
    Inventory,
    InventoryItem,
    Item,
    LedgerFile,
    LedgerHeader,
    LedgerRecord,
    NozzleReading,
    ParseWarning,
    Participant,
    Product,
    TaxValues,
)
from efd.parsing.codes import Direction, RecordTag
from efd.parsing.money import try_decimal
from efd.parsing.utils import only_digits, parse_sped_date
from efd.utils import CancelToken, ProgressCallback, ProgressTicker, read_text_file

# module logger
log = logging.getLogger(__name__)

DELIMITER = "|"
ZERO = Decimal("0")

_TAG_RE = re.compile(r"^[0-9A-Z]\d{3}$")
_CFOP_RE = re.compile(r"^\d{4}$")
_CST_RE = re.compile(r"^\d{2,3}$")


def _t(msg, *args):
    if TRACE:
        log.warning("[TRACE PARSE] " + msg, *args)


class LedgerParseError(ValueError):
    """Unparseable ledger content, or the first problem in strict mode."""

    def __init__(self, reason: str, line_no: int = 0, tag: str = "") -> None:
        self.reason = reason
        self.line_no = line_no
        self.tag = tag
        where = f"line {line_no}" + (f" [{tag}]" if tag else "")
        super().__init__(f"{where}: {reason}" if line_no else reason)


# ────────────────────────── parser state ──────────────────────────
@dataclass
class ParserState:
    """Mutable state of one parse.

    ``open_parents`` maps a parent tag (``C100``, ``1300`` ...) to the record
    currently accepting children.  ``block`` is the first character of the
    last tag seen; moving to another block closes every open parent.
    """

    result: LedgerFile = field(default_factory=LedgerFile)
    strict: bool = False
    open_parents: dict[str, LedgerRecord] = field(default_factory=dict)
    block: str = ""
    finished: bool = False

    def warn(self, line_no: int, tag: str, message: str) -> None:
        if self.strict:
            raise LedgerParseError(message, line_no, tag)
        log.warning("line %s [%s]: %s", line_no, tag or "?", message)
        self.result.warnings.append(ParseWarning(line_no, tag, message))

    def parent(self, tag: str) -> LedgerRecord | None:
        return self.open_parents.get(tag)

    def open(self, record: LedgerRecord) -> None:
        self.open_parents[record.TAG] = record

    def close_from(self, level: int) -> None:
        """Close open parents of the current block at ``level`` or deeper."""
        for tag in list(self.open_parents):
            if _LAYOUTS[tag].level >= level:
                del self.open_parents[tag]


class _Fields:
    """Typed, warning-aware access to the fields of one line."""

    def __init__(self, values: list[str], line_no: int, tag: str, state: ParserState):
        self.values = values
        self.line_no = line_no
        self.tag = tag
        self.state = state

    def text(self, idx: int) -> str:
        return self.values[idx].strip() if idx < len(self.values) else ""

    def dec(self, idx: int) -> Decimal:
        raw = self.text(idx)
        if not raw:
            return ZERO
        val = try_decimal(raw)
        if val is None:
            self.state.warn(
                self.line_no, self.tag, f"field {idx + 1} is not numeric: {raw!r}"
            )
            return ZERO
        return val

    def date(self, idx: int) -> date | None:
        raw = self.text(idx)
        if not raw:
            return None
        val = parse_sped_date(raw)
        if val is None:
            self.state.warn(
                self.line_no, self.tag, f"field {idx + 1} is not a date: {raw!r}"
            )
        return val

    def integer(self, idx: int) -> int | None:
        raw = self.text(idx)
        return int(raw) if raw.isdigit() else None

    def tax(self, base: int, rate: int, value: int) -> TaxValues:
        return TaxValues(self.dec(base), self.dec(rate), self.dec(value))


# ────────────────────────── record builders ──────────────────────────
def _build_0000(f: _Fields, state: ParserState) -> LedgerRecord:
    cnpj = only_digits(f.text(6))
    name = f.text(5)
    if len(cnpj) != 14:
        # some exporters shift the header; take the first 14 digit field
        for idx, val in enumerate(f.values[1:], start=1):
            if re.fullmatch(r"\d{14}", val.strip()):
                cnpj = val.strip()
                prev = f.text(idx - 1)
                if re.search(r"[A-Za-zÀ-ÿ]", prev):
                    name = prev
                break
    header = LedgerHeader(
        f.line_no,
        tuple(f.values),
        purpose=f.text(2),
        start=f.date(3),
        end=f.date(4),
        company_name=name,
        cnpj=cnpj,
        cpf=f.text(7),
        uf=f.text(8),
        ie=f.text(9),
        city_code=f.text(10),
        profile=f.text(13),
    )
    state.result.header = header
    return header


def _build_0150(f: _Fields, state: ParserState) -> LedgerRecord:
    part = Participant(
        f.line_no,
        tuple(f.values),
        code=f.text(1),
        name=f.text(2),
        country=f.text(3),
        cnpj=f.text(4),
        cpf=f.text(5),
        ie=f.text(6),
        city_code=f.text(7),
    )
    if part.code:
        state.result.participants[part.code] = part
    return part


def _build_0200(f: _Fields, state: ParserState) -> LedgerRecord:
    prod = Product(
        f.line_no,
        tuple(f.values),
        code=f.text(1),
        description=f.text(2),
        barcode=f.text(3),
        unit=f.text(5),
        item_type=f.text(6),
        ncm=f.text(7),
    )
    if prod.code:
        state.result.products[prod.code] = prod
    return prod


def _build_c100(f: _Fields, state: ParserState) -> LedgerRecord:
    raw_dir = f.text(1)
    direction = Direction.parse(raw_dir)
    if direction is None:
        state.warn(f.line_no, f.tag, f"unknown IND_OPER {raw_dir!r}")
    doc = Document(
        f.line_no,
        tuple(f.values),
        id=str(f.line_no),
        direction=direction,
        issuer=f.text(2),
        participant_code=f.text(3),
        model=f.text(4),
        status=f.text(5),
        series=f.text(6),
        number=f.text(7),
        access_key=only_digits(f.text(8)) if f.text(8) else "",
        issue_date=f.date(9),
        movement_date=f.date(10),
        total_value=f.dec(11),
        discount=f.dec(13),
        merchandise_value=f.dec(15),
        icms_value=f.dec(21),
        ipi_value=f.dec(24),
        pis_value=f.dec(25),
        cofins_value=f.dec(26),
    )
    state.result.documents.append(doc)
    state.open(doc)
    return doc


def _pick(primary: str, fallback: str, pattern: re.Pattern) -> str:
    """Prefer whichever candidate matches ``pattern``.

    Tolerates exporters that shift C170 by one column around CST/CFOP.
    """
    if pattern.match(primary):
        return primary
    if pattern.match(fallback):
        return fallback
    return primary or fallback


def _build_c170(f: _Fields, state: ParserState) -> LedgerRecord | None:
    doc = state.parent(RecordTag.DOCUMENT.value)
    item = Item(
        f.line_no,
        tuple(f.values),
        document_id=doc.id,
        number=f.integer(1),
        product_code=f.text(2),
        description=f.text(3),
        quantity=f.dec(4),
        unit=f.text(5),
        value=f.dec(6),
        discount=f.dec(7),
        cst_icms=_pick(f.text(9), f.text(11), _CST_RE),
        cfop=_pick(f.text(10), f.text(11), _CFOP_RE),
        icms=f.tax(12, 13, 14),
        icms_st=f.tax(15, 16, 17),
        ipi=f.tax(21, 22, 23),
        pis=f.tax(25, 26, 29),
        cofins=f.tax(31, 32, 35),
    )
    doc.items.append(item)
    return item


def _build_c190(f: _Fields, state: ParserState) -> LedgerRecord | None:
    doc = state.parent(RecordTag.DOCUMENT.value)
    total = CfopTotal(
        f.line_no,
        tuple(f.values),
        document_id=doc.id,
        cst_icms=f.text(1),
        cfop=f.text(2),
        icms_rate=f.dec(3),
        operation_value=f.dec(4),
        icms_base=f.dec(5),
        icms_value=f.dec(6),
        icms_st_base=f.dec(7),
        icms_st_value=f.dec(8),
        reduction_value=f.dec(9),
        ipi_value=f.dec(10),
    )
    doc.totals.append(total)
    return total


def _build_e100(f: _Fields, state: ParserState) -> LedgerRecord:
    period = IcmsPeriod(f.line_no, tuple(f.values), start=f.date(1), end=f.date(2))
    state.result.icms_periods.append(period)
    state.open(period)
    return period


def _build_e110(f: _Fields, state: ParserState) -> LedgerRecord:
    period = state.parent(RecordTag.ICMS_PERIOD.value)
    assessment = IcmsAssessment(
        f.line_no,
        tuple(f.values),
        total_debits=f.dec(1),
        total_credits=f.dec(5),
        balance=f.dec(10),
        payable=f.dec(12),
        credit_carried=f.dec(13),
    )
    period.assessments.append(assessment)
    return assessment


def _build_h005(f: _Fields, state: ParserState) -> LedgerRecord:
    inv = Inventory(
        f.line_no,
        tuple(f.values),
        inventory_date=f.date(1),
        total_value=f.dec(2),
        reason=f.text(3),
    )
    state.result.inventories.append(inv)
    state.open(inv)
    return inv


def _build_h010(f: _Fields, state: ParserState) -> LedgerRecord:
    inv = state.parent(RecordTag.INVENTORY.value)
    item = InventoryItem(
        f.line_no,
        tuple(f.values),
        product_code=f.text(1),
        unit=f.text(2),
        quantity=f.dec(3),
        unit_value=f.dec(4),
        value=f.dec(5),
        ownership=f.text(6),
    )
    inv.items.append(item)
    return item


def _movement_kwargs(f: _Fields, first: int) -> dict:
    """ESTQ_ABERT, VOL_ENTR, VOL_DISP, VOL_SAIDAS, ESTQ_ESCR, VAL_AJ_PERDA,
    VAL_AJ_GANHO, FECH_FISICO starting at field ``first``."""
    return dict(
        opening=f.dec(first),
        receipts=f.dec(first + 1),
        available=f.dec(first + 2),
        sales=f.dec(first + 3),
        closing_book=f.dec(first + 4),
        loss=f.dec(first + 5),
        surplus=f.dec(first + 6),
        closing_physical=f.dec(first + 7),
    )


def _build_1300(f: _Fields, state: ParserState) -> LedgerRecord:
    day = FuelProductDay(
        f.line_no,
        tuple(f.values),
        product_code=f.text(1),
        movement_date=f.date(2),
        **_movement_kwargs(f, 3),
    )
    state.result.fuel_days.append(day)
    state.open(day)
    return day


def _build_1310(f: _Fields, state: ParserState) -> LedgerRecord:
    day = state.parent(RecordTag.FUEL_PRODUCT_DAY.value)
    tank = FuelTankDay(
        f.line_no,
        tuple(f.values),
        product_code=day.product_code,
        movement_date=day.movement_date,
        tank=f.text(1),
        **_movement_kwargs(f, 2),
    )
    day.tanks.append(tank)
    state.open(tank)
    return tank


def _build_1320(f: _Fields, state: ParserState) -> LedgerRecord:
    tank = state.parent(RecordTag.FUEL_TANK_DAY.value)
    reading = NozzleReading(
        f.line_no,
        tuple(f.values),
        product_code=tank.product_code,
        movement_date=tank.movement_date,
        tank=tank.tank,
        nozzle=f.text(1),
        intervention_no=f.text(2),
        intervention_reason=f.text(3),
        technician=f.text(4),
        closing_meter=f.dec(7),
        opening_meter=f.dec(8),
        calibration_volume=f.dec(9),
        sales=f.dec(10),
    )
    tank.nozzles.append(reading)
    return reading


@dataclass(frozen=True)
class RecordLayout:
    """Expected field count (tag included), parent tag and depth."""

    field_count: int
    parent: str | None
    level: int
    build: Callable[[_Fields, ParserState], LedgerRecord | None]


_LAYOUTS: dict[str, RecordLayout] = {
    "0000": RecordLayout(15, None, 0, _build_0000),
    "0150": RecordLayout(13, None, 1, _build_0150),
    "0200": RecordLayout(13, None, 1, _build_0200),
    "C100": RecordLayout(29, None, 1, _build_c100),
    "C170": RecordLayout(38, "C100", 2, _build_c170),
    "C190": RecordLayout(12, "C100", 2, _build_c190),
    "E100": RecordLayout(3, None, 1, _build_e100),
    "E110": RecordLayout(15, "E100", 2, _build_e110),
    "H005": RecordLayout(4, None, 1, _build_h005),
    "H010": RecordLayout(11, "H005", 2, _build_h010),
    "1300": RecordLayout(11, None, 1, _build_1300),
    "1310": RecordLayout(10, "1300", 2, _build_1310),
    "1320": RecordLayout(11, "1310", 3, _build_1320),
}

# Unmodelled records that are siblings of a modelled parent; they close it.
_SIBLING_OPENERS: dict[str, int] = {
    **{t: 1 for t in ("C300", "C350", "C400", "C495", "C500", "C600", "C700", "C800", "C860")},
    **{t: 1 for t in ("E200", "E300", "E500")},
    **{
        t: 1
        for t in (
            "1350", "1390", "1400", "1500", "1600", "1601", "1700",
            "1800", "1900", "1960", "1970", "1980",
        )
    },
}

END_OF_FILE = "9999"


def _split_line(raw: str) -> tuple[list[str], bool]:
    """Return the fields of one line and whether it was properly framed."""
    line = raw.strip()
    framed = line.startswith(DELIMITER) and line.endswith(DELIMITER) and len(line) > 1
    if line.startswith(DELIMITER):
        line = line[1:]
    if line.endswith(DELIMITER):
        line = line[:-1]
    return line.split(DELIMITER), framed


def _process_line(state: ParserState, line_no: int, raw: str) -> bool:
    """Handle one line; return False when it carries no record tag."""
    values, framed = _split_line(raw)
    tag = values[0].strip()
    if not _TAG_RE.match(tag):
        state.warn(line_no, tag[:8], "unrecognized record tag")
        return False
    if not framed:
        state.warn(line_no, tag, "line is not framed by '|'")

    block = tag[0]
    if block != state.block:
        state.open_parents.clear()
        state.block = block
    if tag[1:] == "990":
        state.open_parents.clear()

    layout = _LAYOUTS.get(tag)
    if layout is None:
        if tag in _SIBLING_OPENERS:
            state.close_from(_SIBLING_OPENERS[tag])
        if tag == END_OF_FILE:
            state.finished = True
        state.result.unsupported_tags[tag] += 1
        log.debug("line %s: record %s not modelled", line_no, tag)
        return True

    if layout.parent is None:
        state.close_from(layout.level)
    elif state.parent(layout.parent) is None:
        state.warn(line_no, tag, f"no open {layout.parent} record, line dropped")
        return True
    else:
        state.close_from(layout.level)

    if len(values) != layout.field_count:
        state.warn(
            line_no,
            tag,
            f"expected {layout.field_count} fields, found {len(values)}",
        )
        if len(values) < layout.field_count:
            values = values + [""] * (layout.field_count - len(values))

    _t("line %s -> %s (%d fields)", line_no, tag, len(values))
    layout.build(_Fields(values, line_no, tag, state), state)
    return True


def parse_ledger(
    content: str,
    on_progress: ProgressCallback | None = None,
    *,
    cancel: CancelToken | None = None,
    strict: bool = False,
    progress_step: int | None = None,
) -> LedgerFile:
    """Parse the full text of an EFD ICMS/IPI file.

    Parameters
    ----------
    content : str
        File contents (already decoded).
    on_progress : callable, optional
        ``on_progress(done, total)`` called every ``progress_step`` non-empty
        lines and once at the end.
    cancel : CancelToken, optional
        Checked on the same cadence; raises
        :class:`efd.utils.AnalysisCancelled` when set.
    strict : bool
        Raise :class:`LedgerParseError` on the first structural problem
        instead of collecting warnings.

    Damaged lines never discard the file: short lines are padded with empty
    fields, children without an open parent are dropped, and every such
    event is recorded in ``LedgerFile.warnings``.
    """
    if not content or not content.strip():
        raise LedgerParseError("empty ledger content")

    lines = [(no, raw) for no, raw in enumerate(content.splitlines(), start=1) if raw.strip()]
    state = ParserState(strict=strict)
    ticker = ProgressTicker(
        len(lines), progress_step or PROGRESS_STEP, on_progress, cancel
    )
    recognized = 0
    for line_no, raw in lines:
        if state.finished:
            # digital signature and anything else after |9999|
            log.debug("ignoring %d line(s) after 9999", len(lines) - ticker.done)
            break
        if _process_line(state, line_no, raw):
            recognized += 1
        ticker.tick()

    ticker.finish()

    if recognized == 0:
        raise LedgerParseError("no ledger records found")

    state.result.line_count = len(lines)
    log.info(
        "parsed %d lines: %d documents, %d fuel days, %d warning(s)",
        len(lines),
        len(state.result.documents),
        len(state.result.fuel_days),
        len(state.result.warnings),
    )
    return state.result


def parse_ledger_file(path: str | Path, **kwargs) -> LedgerFile:
    """Read ``path`` (UTF-8 or Latin-1) and parse it with :func:`parse_ledger`."""
    return parse_ledger(read_text_file(path), **kwargs)


# ────────────────────────── derived views ──────────────────────────
def _countable(doc: Document, direction: Direction | None) -> bool:
    return (
        doc.is_regular
        and doc.total_value > 0
        and (direction is None or doc.direction is direction)
    )


def day_cfop_totals(
    ledger: LedgerFile, direction: Direction | None = Direction.OUTBOUND
) -> dict[tuple[date, str], Decimal]:
    """Sum C190 ``VL_OPR`` per (document date, CFOP).

    Only regular documents with a positive value count; ``direction=None``
    takes both directions.
    """
    out: dict[tuple[date, str], Decimal] = {}
    for doc in ledger.documents:
        day = doc.issue_date or doc.movement_date
        if day is None or not _countable(doc, direction):
            continue
        for tot in doc.totals:
            key = (day, tot.cfop)
            out[key] = out.get(key, ZERO) + tot.operation_value
    return out


def daily_totals(
    ledger: LedgerFile, direction: Direction | None = Direction.OUTBOUND
) -> dict[date, Decimal]:
    out: dict[date, Decimal] = {}
    for (day, _cfop), value in day_cfop_totals(ledger, direction).items():
        out[day] = out.get(day, ZERO) + value
    return dict(sorted(out.items()))


def cfop_totals(
    ledger: LedgerFile, direction: Direction | None = Direction.OUTBOUND
) -> dict[str, Decimal]:
    out: dict[str, Decimal] = {}
    for (_day, cfop), value in day_cfop_totals(ledger, direction).items():
        out[cfop] = out.get(cfop, ZERO) + value
    return dict(sorted(out.items(), key=lambda kv: kv[1], reverse=True))

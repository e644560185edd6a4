"""Typed records produced by the parsers and consumed by the audits.

Every ledger record keeps ``line_no`` and the raw ``fields`` tuple (tag
included) so the original line can be re-emitted unchanged by
:mod:`efd.io.sped_writer`.  Records are frozen; child lists are filled only
while the parser owns the parent and must be treated as read-only
afterwards.
"""

from __future__ import annotations

import dataclasses
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from efd.parsing.codes import CANCELLED_STATUSES, Direction, DocumentStatus

ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerRecord:
    TAG: ClassVar[str] = ""

    line_no: int
    fields: tuple[str, ...] = field(repr=False)


@dataclass(frozen=True)
class LedgerHeader(LedgerRecord):
    TAG: ClassVar[str] = "0000"

    purpose: str = ""
    start: date | None = None
    end: date | None = None
    company_name: str = ""
    cnpj: str = ""
    cpf: str = ""
    uf: str = ""
    ie: str = ""
    city_code: str = ""
    profile: str = ""


@dataclass(frozen=True)
class Participant(LedgerRecord):
    TAG: ClassVar[str] = "0150"

    code: str = ""
    name: str = ""
    country: str = ""
    cnpj: str = ""
    cpf: str = ""
    ie: str = ""
    city_code: str = ""


@dataclass(frozen=True)
class Product(LedgerRecord):
    TAG: ClassVar[str] = "0200"

    code: str = ""
    description: str = ""
    barcode: str = ""
    unit: str = ""
    item_type: str = ""
    ncm: str = ""


@dataclass(frozen=True)
class TaxValues:
    """Base, rate and amount of one tax on one line."""

    base: Decimal = ZERO
    rate: Decimal = ZERO
    value: Decimal = ZERO


@dataclass(frozen=True)
class Item(LedgerRecord):
    """C170 - document line."""

    TAG: ClassVar[str] = "C170"

    document_id: str = ""
    number: int | None = None
    product_code: str = ""
    description: str = ""
    quantity: Decimal = ZERO
    unit: str = ""
    value: Decimal = ZERO
    discount: Decimal = ZERO
    cst_icms: str = ""
    cfop: str = ""
    icms: TaxValues = TaxValues()
    icms_st: TaxValues = TaxValues()
    ipi: TaxValues = TaxValues()
    pis: TaxValues = TaxValues()
    cofins: TaxValues = TaxValues()

    @property
    def unit_value(self) -> Decimal:
        return self.value / self.quantity if self.quantity else ZERO


@dataclass(frozen=True)
class CfopTotal(LedgerRecord):
    """C190 - analytic total per (CST, CFOP, rate) of a document."""

    TAG: ClassVar[str] = "C190"

    document_id: str = ""
    cst_icms: str = ""
    cfop: str = ""
    icms_rate: Decimal = ZERO
    operation_value: Decimal = ZERO
    icms_base: Decimal = ZERO
    icms_value: Decimal = ZERO
    icms_st_base: Decimal = ZERO
    icms_st_value: Decimal = ZERO
    reduction_value: Decimal = ZERO
    ipi_value: Decimal = ZERO


@dataclass(frozen=True)
class Document(LedgerRecord):
    """C100 - one fiscal document with its C170 items and C190 totals."""

    TAG: ClassVar[str] = "C100"

    id: str = ""
    direction: Direction | None = None
    issuer: str = ""
    participant_code: str = ""
    model: str = ""
    status: str = ""
    series: str = ""
    number: str = ""
    access_key: str = ""
    issue_date: date | None = None
    movement_date: date | None = None
    total_value: Decimal = ZERO
    discount: Decimal = ZERO
    merchandise_value: Decimal = ZERO
    icms_value: Decimal = ZERO
    ipi_value: Decimal = ZERO
    pis_value: Decimal = ZERO
    cofins_value: Decimal = ZERO
    items: list[Item] = field(default_factory=list, repr=False)
    totals: list[CfopTotal] = field(default_factory=list, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.status in CANCELLED_STATUSES

    @property
    def is_regular(self) -> bool:
        return self.status == DocumentStatus.REGULAR.value


@dataclass(frozen=True)
class IcmsAssessment(LedgerRecord):
    """E110 - ICMS assessment of the period."""

    TAG: ClassVar[str] = "E110"

    total_debits: Decimal = ZERO
    total_credits: Decimal = ZERO
    balance: Decimal = ZERO
    payable: Decimal = ZERO
    credit_carried: Decimal = ZERO


@dataclass(frozen=True)
class IcmsPeriod(LedgerRecord):
    TAG: ClassVar[str] = "E100"

    start: date | None = None
    end: date | None = None
    assessments: list[IcmsAssessment] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class InventoryItem(LedgerRecord):
    TAG: ClassVar[str] = "H010"

    product_code: str = ""
    unit: str = ""
    quantity: Decimal = ZERO
    unit_value: Decimal = ZERO
    value: Decimal = ZERO
    ownership: str = ""


@dataclass(frozen=True)
class Inventory(LedgerRecord):
    TAG: ClassVar[str] = "H005"

    inventory_date: date | None = None
    total_value: Decimal = ZERO
    reason: str = ""
    items: list[InventoryItem] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class FuelMovement(LedgerRecord):
    """Quantities shared by the product-day (1300) and tank-day (1310)."""

    product_code: str = ""
    movement_date: date | None = None
    opening: Decimal = ZERO
    receipts: Decimal = ZERO
    available: Decimal = ZERO
    sales: Decimal = ZERO
    closing_book: Decimal = ZERO
    loss: Decimal = ZERO
    surplus: Decimal = ZERO
    closing_physical: Decimal = ZERO


@dataclass(frozen=True)
class NozzleReading(LedgerRecord):
    """1320 - meter readings of one nozzle on a tank-day."""

    TAG: ClassVar[str] = "1320"

    product_code: str = ""
    movement_date: date | None = None
    tank: str = ""
    nozzle: str = ""
    intervention_no: str = ""
    intervention_reason: str = ""
    technician: str = ""
    closing_meter: Decimal = ZERO
    opening_meter: Decimal = ZERO
    calibration_volume: Decimal = ZERO
    sales: Decimal = ZERO


@dataclass(frozen=True)
class FuelTankDay(FuelMovement):
    TAG: ClassVar[str] = "1310"

    tank: str = ""
    nozzles: list[NozzleReading] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class FuelProductDay(FuelMovement):
    TAG: ClassVar[str] = "1300"

    tanks: list[FuelTankDay] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class ParseWarning:
    line_no: int
    tag: str
    message: str


@dataclass
class LedgerFile:
    """Result of :func:`efd.parsing.sped.parse_ledger`."""

    header: LedgerHeader | None = None
    documents: list[Document] = field(default_factory=list)
    participants: dict[str, Participant] = field(default_factory=dict)
    products: dict[str, Product] = field(default_factory=dict)
    icms_periods: list[IcmsPeriod] = field(default_factory=list)
    inventories: list[Inventory] = field(default_factory=list)
    fuel_days: list[FuelProductDay] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)
    unsupported_tags: Counter = field(default_factory=Counter)
    line_count: int = 0

    @property
    def inbound(self) -> list[Document]:
        return [d for d in self.documents if d.direction is Direction.INBOUND]

    @property
    def outbound(self) -> list[Document]:
        return [d for d in self.documents if d.direction is Direction.OUTBOUND]

    @property
    def fuel_tanks(self) -> list[FuelTankDay]:
        return [t for day in self.fuel_days for t in day.tanks]

    @property
    def fuel_nozzles(self) -> list[NozzleReading]:
        return [n for t in self.fuel_tanks for n in t.nozzles]

    @property
    def period(self) -> tuple[date | None, date | None]:
        if self.header and (self.header.start or self.header.end):
            return self.header.start, self.header.end
        dates = [d.issue_date for d in self.documents if d.issue_date]
        if not dates:
            return None, None
        return min(dates), max(dates)


# ---------------------------------------------------------------------------
# Invoice (NF-e / NFC-e) records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvoiceItem:
    number: int
    product_code: str = ""
    description: str = ""
    cfop: str = ""
    quantity: Decimal = ZERO
    unit: str = ""
    value: Decimal = ZERO
    discount: Decimal = ZERO
    cst_icms: str = ""
    icms: TaxValues = TaxValues()
    icms_st: TaxValues = TaxValues()
    ipi: TaxValues = TaxValues()
    pis: TaxValues = TaxValues()
    cofins: TaxValues = TaxValues()
    mono_base: Decimal = ZERO
    mono_value: Decimal = ZERO


@dataclass(frozen=True)
class InvoiceDocument:
    access_key: str
    number: str = ""
    series: str = ""
    model: str = ""
    direction: Direction | None = None
    issue_date: date | None = None
    issued_at: str = ""
    issuer_cnpj: str = ""
    recipient_cnpj: str = ""
    status_code: str = ""
    authorized: bool = False
    total_value: Decimal = ZERO
    merchandise_value: Decimal = ZERO
    discount: Decimal = ZERO
    freight: Decimal = ZERO
    insurance: Decimal = ZERO
    other_charges: Decimal = ZERO
    icms_base: Decimal = ZERO
    icms_value: Decimal = ZERO
    icms_st_base: Decimal = ZERO
    icms_st_value: Decimal = ZERO
    ipi_value: Decimal = ZERO
    pis_value: Decimal = ZERO
    cofins_value: Decimal = ZERO
    payment_indicator: str = ""
    freight_mode: str = ""
    items: tuple[InvoiceItem, ...] = ()


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class InconsistencyKind(str, Enum):
    SEQUENCE_GAP = "SEQUENCE_GAP"
    INVOICE_WITHOUT_LEDGER = "INVOICE_WITHOUT_LEDGER"
    LEDGER_WITHOUT_INVOICE = "LEDGER_WITHOUT_INVOICE"
    LEDGER_WITHOUT_KEY = "LEDGER_WITHOUT_KEY"
    STOCK_INCREASE_WITHOUT_RECEIPT = "STOCK_INCREASE_WITHOUT_RECEIPT"
    LOSS_OVER_LIMIT = "LOSS_OVER_LIMIT"
    SURPLUS_OVER_LIMIT = "SURPLUS_OVER_LIMIT"
    TANK_SUM_MISMATCH = "TANK_SUM_MISMATCH"
    NOZZLE_SUM_MISMATCH = "NOZZLE_SUM_MISMATCH"
    SALES_DOCUMENT_MISMATCH = "SALES_DOCUMENT_MISMATCH"
    RECEIPT_WITHOUT_DOCUMENT = "RECEIPT_WITHOUT_DOCUMENT"
    NEGATIVE_STOCK = "NEGATIVE_STOCK"
    ANOMALOUS_VARIATION = "ANOMALOUS_VARIATION"
    AVAILABLE_MISMATCH = "AVAILABLE_MISMATCH"
    CLOSING_MISMATCH = "CLOSING_MISMATCH"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Inconsistency:
    kind: InconsistencyKind
    severity: Severity
    expected: Decimal
    found: Decimal
    difference: Decimal
    difference_pct: Decimal
    description: str
    product_code: str | None = None
    movement_date: date | None = None
    tank: str | None = None
    references: tuple[str, ...] = ()
    detected_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def as_plain(obj: Any, *, drop_raw: bool = True) -> Any:
    """Return ``obj`` as JSON-friendly builtins.

    Decimals become floats, dates ISO strings and enums their values.  The
    raw ``fields`` tuple of ledger records is dropped unless ``drop_raw`` is
    false.
    """
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        out = {}
        for f in dataclasses.fields(obj):
            if drop_raw and f.name == "fields":
                continue
            out[f.name] = as_plain(getattr(obj, f.name), drop_raw=drop_raw)
        return out
    if isinstance(obj, (list, tuple)):
        return [as_plain(v, drop_raw=drop_raw) for v in obj]
    if isinstance(obj, dict):
        return {str(_plain(k)): as_plain(v, drop_raw=drop_raw) for k, v in obj.items()}
    return _plain(obj)

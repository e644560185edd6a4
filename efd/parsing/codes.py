"""Enumerations for EFD ICMS/IPI codes used in parsing."""

from enum import Enum


class RecordTag(str, Enum):
    """Record types understood by the ledger parser."""

    OPENING = "0000"
    PARTICIPANT = "0150"
    PRODUCT = "0200"
    DOCUMENT = "C100"
    ITEM = "C170"
    CFOP_TOTAL = "C190"
    ICMS_PERIOD = "E100"
    ICMS_ASSESSMENT = "E110"
    INVENTORY = "H005"
    INVENTORY_ITEM = "H010"
    FUEL_PRODUCT_DAY = "1300"
    FUEL_TANK_DAY = "1310"
    FUEL_NOZZLE = "1320"


class Direction(str, Enum):
    """IND_OPER: 0 = entrada (credit side), 1 = saída (debit side)."""

    INBOUND = "0"
    OUTBOUND = "1"

    @classmethod
    def parse(cls, value: str | None) -> "Direction | None":
        try:
            return cls((value or "").strip())
        except ValueError:
            return None


class DocumentStatus(str, Enum):
    """Relevant COD_SIT values."""

    REGULAR = "00"
    REGULAR_LATE = "01"
    CANCELLED = "02"
    CANCELLED_LATE = "03"
    DENIED = "04"
    UNUSED = "05"
    COMPLEMENTARY = "06"
    COMPLEMENTARY_LATE = "07"
    SPECIAL = "08"


CANCELLED_STATUSES = {
    DocumentStatus.CANCELLED.value,
    DocumentStatus.CANCELLED_LATE.value,
    DocumentStatus.DENIED.value,
    DocumentStatus.UNUSED.value,
}


class TaxType(str, Enum):
    ICMS = "icms"
    IPI = "ipi"
    PIS = "pis"
    COFINS = "cofins"


class InvoiceModel(str, Enum):
    """Document model at positions 20-22 of the access key."""

    NFE = "55"
    NFCE = "65"


# cStat values for an authorized invoice (100 = on time, 150 = late).
AUTHORIZED_CSTAT = {"100", "150"}

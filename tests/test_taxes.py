from decimal import Decimal

import pytest

from efd.audit.taxes import aggregate_taxes, ledger_taxes
from efd.constants import AuditThresholds
from efd.parsing.codes import TaxType
from efd.parsing.sped import parse_ledger
from efd.utils import AnalysisCancelled, CancelToken


def test_debits_and_credits_per_cfop():
    documents = [("1", "1"), ("2", "0"), {"id": "3", "type": "1"}]
    totals = [
        {"document_id": "1", "cfop": "5102", "icms_value": "180,00", "ipi_value": "10,00"},
        {"document_id": "1", "cfop": "5405", "icms_value": "20,00"},
        {"document_id": "2", "cfop": "1102", "icms_value": "90,00"},
        {"document_id": "3", "cfop": "5102", "icms_value": "0,00"},
    ]
    items = [
        {"document_id": "1", "cfop": "5102", "pis_value": "16,50", "cofins_value": "76,00"},
        {"document_id": "2", "cfop": "", "pis_value": "8,25", "cofins_value": "38,00"},
    ]
    report = aggregate_taxes(documents, totals, items)

    icms = report[TaxType.ICMS]
    assert icms.total_debit == Decimal("200.00")
    assert icms.total_credit == Decimal("90.00")
    assert icms.balance == Decimal("110.00")
    assert sum(c.debit for c in icms.by_cfop.values()) == icms.total_debit
    assert sum(c.credit for c in icms.by_cfop.values()) == icms.total_credit
    assert [c.cfop for c in icms.top_cfops] == ["5102", "1102", "5405"]

    assert report["ipi"].total_debit == Decimal("10.00")
    pis = report[TaxType.PIS]
    assert pis.total_debit == Decimal("16.50")
    assert pis.by_cfop["0000"].credit == Decimal("8.25")
    assert report[TaxType.COFINS].balance == Decimal("38.00")
    assert not report.pis_cofins_missing


def test_records_of_unknown_documents_are_skipped():
    report = aggregate_taxes(
        [("1", "1"), ("2", "X")],
        [
            {"document_id": "2", "cfop": "5102", "icms_value": "50"},
            {"document_id": "9", "cfop": "5102", "icms_value": "50"},
            {"document_id": "1", "cfop": "5102", "icms_value": "50"},
        ],
        [],
    )
    assert report[TaxType.ICMS].total_debit == Decimal("50")
    assert report.skipped_records == 2


def test_missing_pis_cofins_is_flagged():
    report = aggregate_taxes(
        [("1", "1")],
        [{"document_id": "1", "cfop": "5102", "icms_value": "10"}],
        [{"document_id": "1", "cfop": "5102", "pis_value": "0", "cofins_value": ""}],
    )
    assert report.pis_cofins_missing
    assert report[TaxType.PIS].by_cfop == {}


def test_top_cfops_limit_and_tie_order():
    totals = [
        {"document_id": "1", "cfop": cfop, "icms_value": value}
        for cfop, value in (("5405", "5"), ("5102", "5"), ("5656", "9"), ("5929", "1"))
    ]
    report = aggregate_taxes([("1", "1")], totals, [], AuditThresholds(top_cfops=3))
    assert [c.cfop for c in report[TaxType.ICMS].top_cfops] == ["5656", "5102", "5405"]


def _c100(number, oper, sit="00"):
    fields = ["C100", oper, "0", "P1", "55", sit, "1", str(number), "", "15012024", "15012024", "10,00"]
    fields += [""] * 17
    return "|" + "|".join(fields) + "|"


def _c170(cfop, pis, cofins):
    fields = ["C170", "1", "001", "", "1", "L", "100,00", "0", "0", "000", cfop, ""]
    fields += [""] * 17 + [pis] + [""] * 5 + [cofins] + ["", ""]
    return "|" + "|".join(fields) + "|"


def _c190(cfop, icms):
    return f"|C190|000|{cfop}|18,00|100,00|100,00|{icms}|0|0|0|0||"


def test_ledger_taxes_excludes_cancelled_documents():
    text = "\n".join(
        [
            "|0000|017|0|01012024|31012024|POSTO|12345678000195||SP|1|3550308|||A|1|",
            _c100(1, "1"),
            _c170("5102", "1,65", "7,60"),
            _c190("5102", "18,00"),
            _c100(2, "1", sit="02"),
            _c190("5102", "18,00"),
            _c100(3, "0"),
            _c170("1102", "1,00", "4,00"),
            _c190("1102", "12,00"),
        ]
    )
    ledger = parse_ledger(text)
    assert ledger.warnings == []

    report = ledger_taxes(ledger)
    assert report[TaxType.ICMS].total_debit == Decimal("18.00")
    assert report[TaxType.ICMS].total_credit == Decimal("12.00")
    assert report[TaxType.PIS].balance == Decimal("0.65")
    assert report[TaxType.COFINS].by_cfop["1102"].credit == Decimal("4.00")


def test_cancelled_aggregation_raises():
    token = CancelToken()
    token.cancel()
    totals = [{"document_id": "1", "cfop": "5102", "icms_value": "18,00"}]
    with pytest.raises(AnalysisCancelled):
        aggregate_taxes([("1", "1")], totals, [], cancel=token)

import pytest

from efd.analysis import ANALYSES, run_analysis, thresholds_from_payload
from efd.utils import CancelToken

CNPJ = "12345678000195"
HEADER = f"|0000|017|0|01012024|31012024|POSTO TESTE|{CNPJ}||SP|1|3550308|||A|1|"


def key(number: int) -> str:
    return f"352401{CNPJ}55001{number:09d}1000000010"


def test_parse_payload():
    out = run_analysis("parse", {"content": HEADER + "\n|C100|1|0|P1|55|00|1|1|" + key(1) + "|15012024|15012024|10,00|" + "|" * 17})

    assert out["company"] == "POSTO TESTE"
    assert out["start"] == "2024-01-01"
    assert out["documents"] == 1
    assert out["outbound"] == 1
    assert out["warnings"] == []


def test_parse_error_is_returned_not_raised():
    assert run_analysis("parse", {"content": ""}) == {"error": "empty ledger content"}
    out = run_analysis("parse", {"content": HEADER + "\n|C190|x|", "strict": True})
    assert out["error"].startswith("line 2 [C190]")


def test_missing_field_and_unknown_analysis():
    assert run_analysis("parse", {}) == {"error": "missing field 'content'"}
    assert run_analysis("nope", {}) == {"error": "unknown analysis 'nope'"}
    assert set(ANALYSES) == {"parse", "gaps", "orphans", "abc", "taxes", "fuel", "compare"}


def test_gaps_payload():
    entries = [[key(n), "2024-01-%02d" % (n - 99)] for n in (100, 101, 103, 104, 107)]
    out = run_analysis("gaps", {"entries": entries})

    assert [(g["start"], g["end"], g["count"]) for g in out["gaps"]] == [(102, 102, 1), (105, 106, 2)]
    assert out["inconsistencies"][0]["kind"] == "SEQUENCE_GAP"
    assert out["inconsistencies"][0]["severity"] == "WARNING"


def test_orphans_payload():
    out = run_analysis(
        "orphans",
        {"ledger": [key(1), key(2), key(3)], "invoices": [{"access_key": key(n)} for n in (2, 3, 4)]},
    )
    assert out["invoice_without_ledger"] == [key(4)]
    assert out["ledger_without_invoice"] == [key(1)]
    assert out["matched"] == 2
    assert [i["severity"] for i in out["inconsistencies"]] == ["CRITICAL", "WARNING"]


def test_abc_payload_with_thresholds():
    items = [{"code": "A", "value": 800}, {"code": "B", "value": "150,00"}, {"code": "C", "value": 50}]
    out = run_analysis("abc", {"items": items})
    assert [(r["code"], r["abc_class"], r["cumulative_pct"]) for r in out["rows"]] == [
        ("A", "A", 80.0),
        ("B", "B", 95.0),
        ("C", "C", 100.0),
    ]

    out = run_analysis("abc", {"items": items, "thresholds": {"abc_a_pct": 70}})
    assert out["rows"][0]["abc_class"] == "B"


def test_unknown_threshold_is_an_error():
    assert run_analysis("abc", {"items": [], "thresholds": {"bogus": 1}}) == {
        "error": "unknown threshold: bogus"
    }
    with pytest.raises(ValueError):
        thresholds_from_payload({"bogus": 1})


def test_taxes_payload():
    out = run_analysis(
        "taxes",
        {
            "documents": [{"id": "1", "direction": "1"}, {"id": "2", "direction": "0"}],
            "totals": [
                {"document_id": "1", "cfop": "5102", "icms_value": "180,00"},
                {"document_id": "2", "cfop": "1102", "icms_value": 90},
            ],
            "items": [],
        },
    )
    assert out["icms"]["total_debit"] == 180.0
    assert out["icms"]["balance"] == 90.0
    assert out["icms"]["top_cfops"][0]["cfop"] == "5102"
    assert out["pis_cofins_missing"] is True


def test_fuel_payload():
    day = {
        "product_code": "001",
        "movement_date": "2024-01-15",
        "opening": "1000",
        "receipts": "0",
        "available": "1000",
        "sales": "100",
        "closing_book": "900",
        "closing_physical": "900",
        "tanks": [
            {
                "tank": "1",
                "sales": "100",
                "nozzles": [{"nozzle": "1", "sales": "60"}, {"nozzle": "2", "sales": "30"}],
            }
        ],
    }
    out = run_analysis("fuel", {"days": [day], "sales": [{"product_code": "001", "movement_date": "15012024", "quantity": 100, "cfop": "5656"}]})

    assert [i["kind"] for i in out["inconsistencies"]] == ["NOZZLE_SUM_MISMATCH"]
    assert out["inconsistencies"][0]["tank"] == "1"
    assert out["summary"]["total"] == 1
    assert out["summary"]["by_severity"]["CRITICAL"] == 1


def test_compare_payload():
    content = "\n".join(
        [
            HEADER,
            "|C100|1|0|P1|55|00|1|1|" + key(1) + "|15012024|15012024|100,00|" + "|" * 17,
            "|C190|000|5102|18,00|100,00|100,00|18,00|0|0|0|0||",
        ]
    )
    out = run_analysis("compare", {"content": content, "invoices": ["<broken"]})

    assert out["ignored_invoices"] == 1
    (row,) = out["rows"]
    assert row["day"] == "2024-01-15"
    assert row["ledger_value"] == 100.0
    assert row["risk"] == "HIGH"


def test_cancelled_run_reports_error():
    token = CancelToken()
    token.cancel()
    out = run_analysis("fuel", {"days": [{"product_code": "001", "sales": "1"}]}, cancel=token)
    assert out == {"error": "analysis cancelled by caller"}


@pytest.mark.parametrize(
    "name,payload",
    [
        ("gaps", {"entries": [[key(1), None], [key(3), None]]}),
        ("orphans", {"ledger": [key(1)], "invoices": [key(2)]}),
        ("abc", {"items": [{"code": "A", "value": 10}]}),
        (
            "taxes",
            {
                "documents": [{"id": "1", "direction": "1"}],
                "totals": [{"document_id": "1", "cfop": "5102", "icms_value": 18}],
            },
        ),
    ],
)
def test_every_analysis_honours_cancellation(name, payload):
    token = CancelToken()
    token.cancel()
    assert run_analysis(name, payload, cancel=token) == {"error": "analysis cancelled by caller"}

from datetime import date
from decimal import Decimal

import pytest

from efd.io.sped_writer import render_record
from efd.parsing.codes import Direction
from efd.parsing.sped import (
    LedgerParseError,
    cfop_totals,
    daily_totals,
    day_cfop_totals,
    parse_ledger,
    parse_ledger_file,
)
from efd.utils import AnalysisCancelled, CancelToken

CNPJ = "12345678000195"


def key(number: int, model: str = "55", series: int = 1) -> str:
    return f"352401{CNPJ}{model}{series:03d}{number:09d}1000000010"


def line(*fields) -> str:
    return "|" + "|".join(str(f) for f in fields) + "|"


def header() -> str:
    return line(
        "0000", "017", "0", "01012024", "31012024", "POSTO TESTE LTDA", CNPJ,
        "", "SP", "123456789", "3550308", "", "", "A", "1",
    )


def c100(number, *, oper="1", sit="00", value="1000,00", day="15012024", chv=None):
    return line(
        "C100", oper, "0", "PART1", "55", sit, "1", number,
        key(number) if chv is None else chv, day, day, value, "0", "0,00", "0,00",
        value, "9", "0,00", "0,00", "0,00", value, "180,00", "0,00", "0,00",
        "0,00", "16,50", "76,00", "0,00", "0,00",
    )


def c170(num, code, qty, value, cfop="5102"):
    fields = ["C170", num, code, "", qty, "L", value, "0,00", "0", "000", cfop, ""]
    fields += ["0,00"] * 6 + ["0", "", ""] + ["0,00"] * 3
    fields += ["01", value, "1,65", "", "", "16,50", "01", value, "7,60", "", "", "76,00", "", "0,00"]
    assert len(fields) == 38
    return line(*fields)


def c190(cfop, value, icms="180,00"):
    return line("C190", "000", cfop, "18,00", value, value, icms, "0,00", "0,00", "0,00", "0,00", "")


SAMPLE = "\n".join(
    [
        header(),
        line("0150", "PART1", "CLIENTE A", "1058", "98765432000110", "", "", "3550308", "", "RUA X", "1", "", ""),
        line("0200", "001", "GASOLINA COMUM", "", "", "L", "00", "27101259", "", "", "", "18,00", ""),
        line("C001", "0"),
        c100(101),
        c170(1, "001", "100,000", "600,00"),
        c170(2, "001", "50,000", "400,00"),
        c190("5102", "1000,00"),
        c100(102, sit="02", value=""),
        c100(103, oper="0", value="500,00"),
        c190("1102", "500,00", icms="90,00"),
        line("C990", "9"),
        line("1001", "0"),
        line("1300", "001", "15012024", "1000,000", "0,000", "1000,000", "150,000", "850,000", "0,000", "0,000", "850,000"),
        line("1310", "1", "1000,000", "0,000", "1000,000", "150,000", "850,000", "0,000", "0,000", "850,000"),
        line("1320", "1", "", "", "", "", "", "1100,000", "1000,000", "0,000", "100,000"),
        line("1320", "2", "", "", "", "", "", "550,000", "500,000", "0,000", "50,000"),
        line("1990", "5"),
        line("9999", "20"),
    ]
)


def test_parse_builds_document_hierarchy():
    ledger = parse_ledger(SAMPLE)

    assert ledger.warnings == []
    assert ledger.header.cnpj == CNPJ
    assert ledger.header.company_name == "POSTO TESTE LTDA"
    assert ledger.period == (date(2024, 1, 1), date(2024, 1, 31))
    assert ledger.participants["PART1"].cnpj == "98765432000110"
    assert ledger.products["001"].description == "GASOLINA COMUM"

    assert len(ledger.documents) == 3
    first, cancelled, inbound = ledger.documents
    assert first.direction is Direction.OUTBOUND
    assert first.access_key == key(101)
    assert first.total_value == Decimal("1000.00")
    assert [i.quantity for i in first.items] == [Decimal("100.000"), Decimal("50.000")]
    assert all(i.document_id == first.id for i in first.items)
    assert first.items[0].pis.value == Decimal("16.50")
    assert [t.cfop for t in first.totals] == ["5102"]
    assert cancelled.is_cancelled and cancelled.items == [] and cancelled.totals == []
    assert inbound.direction is Direction.INBOUND
    assert ledger.inbound == [inbound]


def test_parse_builds_fuel_hierarchy():
    ledger = parse_ledger(SAMPLE)

    assert len(ledger.fuel_days) == 1
    day = ledger.fuel_days[0]
    assert day.movement_date == date(2024, 1, 15)
    assert day.sales == Decimal("150.000")
    assert day.closing_book == Decimal("850.000")
    assert day.closing_physical == Decimal("850.000")
    assert len(day.tanks) == 1
    tank = day.tanks[0]
    assert ledger.fuel_tanks == [tank]
    assert tank.product_code == "001"
    assert [n.nozzle for n in tank.nozzles] == ["1", "2"]
    assert tank.nozzles[0].closing_meter == Decimal("1100.000")
    assert tank.nozzles[0].opening_meter == Decimal("1000.000")
    assert sum(n.sales for n in ledger.fuel_nozzles) == Decimal("150.000")


def test_unmodelled_tags_are_tallied_without_warnings():
    ledger = parse_ledger(SAMPLE)
    assert ledger.unsupported_tags["C001"] == 1
    assert ledger.unsupported_tags["C990"] == 1
    assert ledger.unsupported_tags["9999"] == 1


def test_short_line_is_padded_and_warned():
    text = "\n".join([header(), c100(1), line("C190", "000", "5102", "18,00", "100,00")])
    ledger = parse_ledger(text)

    total = ledger.documents[0].totals[0]
    assert total.operation_value == Decimal("100.00")
    assert total.icms_value == Decimal("0")
    assert len(ledger.warnings) == 1
    assert ledger.warnings[0].tag == "C190"
    assert ledger.warnings[0].line_no == 3
    assert "expected 12 fields" in ledger.warnings[0].message


def test_child_without_open_parent_is_dropped():
    text = "\n".join([header(), c170(1, "001", "1,000", "10,00")])
    ledger = parse_ledger(text)

    assert ledger.documents == []
    assert len(ledger.warnings) == 1
    assert "no open C100" in ledger.warnings[0].message


def test_terminator_closes_open_document():
    text = "\n".join([header(), c100(1), line("C990", "3"), c190("5102", "10,00")])
    ledger = parse_ledger(text)

    assert ledger.documents[0].totals == []
    assert ledger.warnings[0].line_no == 4


def test_unmodelled_child_keeps_parent_open():
    text = "\n".join(
        [header(), c100(1), line("C101", "0,00", "0,00", "0,00"), c190("5102", "10,00")]
    )
    ledger = parse_ledger(text)

    assert len(ledger.documents[0].totals) == 1
    assert ledger.warnings == []


def test_sibling_record_closes_document():
    text = "\n".join([header(), c100(1), line("C400", "2D", "ECF", "X", "1"), c190("5102", "10,00")])
    ledger = parse_ledger(text)

    assert ledger.documents[0].totals == []
    assert len(ledger.warnings) == 1


def test_new_document_takes_following_children():
    text = "\n".join([header(), c100(1), c100(2), c190("5102", "10,00")])
    ledger = parse_ledger(text)

    assert ledger.documents[0].totals == []
    assert len(ledger.documents[1].totals) == 1


def test_non_numeric_value_becomes_zero_with_warning():
    text = "\n".join([header(), c100(1), c190("5102", "abc")])
    ledger = parse_ledger(text)

    assert ledger.documents[0].totals[0].operation_value == Decimal("0")
    assert "not numeric" in ledger.warnings[0].message


def test_garbage_line_is_warned_and_skipped():
    text = "\n".join([header(), "garbage line", c100(1)])
    ledger = parse_ledger(text)

    assert len(ledger.documents) == 1
    assert ledger.warnings[0].message == "unrecognized record tag"


def test_strict_mode_raises_on_first_problem():
    text = "\n".join([header(), c100(1), line("C190", "000")])
    with pytest.raises(LedgerParseError) as exc:
        parse_ledger(text, strict=True)
    assert exc.value.line_no == 3
    assert exc.value.tag == "C190"


def test_empty_content_raises():
    with pytest.raises(LedgerParseError):
        parse_ledger("")
    with pytest.raises(LedgerParseError):
        parse_ledger("  \n \n")


def test_content_without_any_record_raises():
    with pytest.raises(LedgerParseError):
        parse_ledger("hello\nworld\n")


def test_lines_after_end_of_file_are_ignored():
    text = "\n".join([header(), line("9999", "2"), "SBRCAAEPDR0123456789", c100(1)])
    ledger = parse_ledger(text)

    assert ledger.documents == []
    assert ledger.warnings == []


def test_progress_is_reported_in_steps():
    lines = [header()] + [line("0190", "UN", "UNIDADE")] * 449
    calls = []
    parse_ledger("\n".join(lines), lambda done, total: calls.append((done, total)), progress_step=200)
    assert calls == [(200, 450), (400, 450), (450, 450)]


def test_failing_progress_callback_does_not_abort():
    def boom(done, total):
        raise RuntimeError("ui gone")

    ledger = parse_ledger(SAMPLE, boom, progress_step=1)
    assert len(ledger.documents) == 3


def test_cancelled_parse_raises():
    token = CancelToken()
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        parse_ledger(SAMPLE, cancel=token, progress_step=5)


def test_parsers_do_not_share_state():
    a = parse_ledger("\n".join([header(), c100(1)]))
    b = parse_ledger("\n".join([header(), c190("5102", "1,00")]))
    assert a.documents[0].totals == []
    assert b.documents == []


def test_records_round_trip_to_original_line():
    ledger = parse_ledger(SAMPLE)
    lines = SAMPLE.split("\n")
    assert render_record(ledger.header) == lines[0]
    doc = ledger.documents[0]
    assert render_record(doc) == lines[doc.line_no - 1]
    assert render_record(doc.items[1]) == lines[doc.items[1].line_no - 1]
    nozzle = ledger.fuel_nozzles[1]
    assert render_record(nozzle) == lines[nozzle.line_no - 1]


def test_derived_views_use_regular_documents_only():
    ledger = parse_ledger(SAMPLE)

    assert day_cfop_totals(ledger) == {(date(2024, 1, 15), "5102"): Decimal("1000.00")}
    assert day_cfop_totals(ledger, Direction.INBOUND) == {
        (date(2024, 1, 15), "1102"): Decimal("500.00")
    }
    assert daily_totals(ledger, None) == {date(2024, 1, 15): Decimal("1500.00")}
    assert list(cfop_totals(ledger, None)) == ["5102", "1102"]


def test_parse_ledger_file_reads_latin1(tmp_path):
    path = tmp_path / "sped.txt"
    text = "\r\n".join([header().replace("POSTO TESTE LTDA", "POSTO SÃO JOÃO"), c100(1)])
    path.write_bytes(text.encode("latin-1"))

    ledger = parse_ledger_file(path)
    assert ledger.header.company_name == "POSTO SÃO JOÃO"
    assert len(ledger.documents) == 1

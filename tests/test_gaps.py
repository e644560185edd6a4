from datetime import date
from decimal import Decimal

import pytest

from efd.audit.gaps import (
    find_sequence_gaps,
    gap_entries_from_ledger,
    gap_inconsistencies,
)
from efd.models import InconsistencyKind, Severity
from efd.parsing.sped import parse_ledger
from efd.utils import AnalysisCancelled, CancelToken

CNPJ = "12345678000195"


def key(number: int, model: str = "55", series: int = 1) -> str:
    return f"352401{CNPJ}{model}{series:03d}{number:09d}1000000010"


def test_gaps_in_one_series():
    entries = [(key(n), date(2024, 1, n - 99)) for n in (100, 101, 103, 104, 107)]
    gaps = find_sequence_gaps(entries)

    assert [(g.start, g.end, g.count) for g in gaps] == [(102, 102, 1), (105, 106, 2)]
    assert gaps[0].model == "55" and gaps[0].series == "001"
    assert gaps[0].previous_date == date(2024, 1, 2)
    assert gaps[0].next_date == date(2024, 1, 4)


def test_unsorted_input_and_duplicates():
    entries = [(key(n), None) for n in (5, 1, 3, 3, 2)]
    gaps = find_sequence_gaps(entries)
    assert [(g.start, g.end, g.count) for g in gaps] == [(4, 4, 1)]


def test_contiguous_numbers_have_no_gaps():
    assert find_sequence_gaps([(key(n), None) for n in range(1, 20)]) == []
    assert find_sequence_gaps([]) == []


def test_series_and_models_are_separate():
    entries = [
        (key(1), None),
        (key(3), None),
        (key(10, series=2), None),
        (key(11, series=2), None),
        (key(1, model="65"), None),
        (key(5, model="65"), None),
    ]
    gaps = find_sequence_gaps(entries)
    assert [(g.model, g.series, g.start, g.end) for g in gaps] == [
        ("55", "001", 2, 2),
        ("65", "001", 2, 4),
    ]


def test_invalid_keys_are_skipped():
    entries = [(key(1), None), ("", None), ("123", None), (key(1)[:-1] + "X", None), (key(3), None)]
    gaps = find_sequence_gaps(entries)
    assert [(g.start, g.count) for g in gaps] == [(2, 1)]


def test_mapping_entries():
    entries = [
        {"access_key": key(1), "date": "2024-01-01"},
        {"chave": key(4), "data": "04/01/2024"},
    ]
    (gap,) = find_sequence_gaps(entries)
    assert (gap.start, gap.end, gap.count) == (2, 3, 2)
    assert gap.next_date == date(2024, 1, 4)


def test_gap_inconsistencies():
    entries = [(key(n), None) for n in (100, 101, 103, 104, 107)]
    found = gap_inconsistencies(find_sequence_gaps(entries))

    assert [i.kind for i in found] == [InconsistencyKind.SEQUENCE_GAP] * 2
    assert all(i.severity is Severity.WARNING for i in found)
    missing = found[1]
    assert (missing.expected, missing.found, missing.difference) == (Decimal(2), 0, Decimal(2))
    assert missing.difference_pct == Decimal("100")
    assert found[0].expected == Decimal(1)
    assert found[1].references == ("55/001",)
    assert "105 a 106" in found[1].description


def _c100(number, issuer="0", sit="00"):
    fields = ["C100", "1", issuer, "P1", "55", sit, "1", str(number), key(number), "15012024", "15012024"]
    fields += ["10,00"] + [""] * 17
    return "|" + "|".join(fields) + "|"


def test_ledger_entries_include_cancelled_own_documents():
    text = "\n".join(
        [
            "|0000|017|0|01012024|31012024|POSTO|" + CNPJ + "||SP|1|3550308|||A|1|",
            _c100(1),
            _c100(2, sit="02"),
            _c100(3, issuer="1"),
            _c100(5),
        ]
    )
    ledger = parse_ledger(text)

    own = gap_entries_from_ledger(ledger)
    assert [k for k, _ in own] == [key(1), key(2), key(5)]
    assert [(g.start, g.end) for g in find_sequence_gaps(own)] == [(3, 4)]
    assert len(gap_entries_from_ledger(ledger, own_only=False)) == 4


def test_cancelled_gap_search_raises():
    token = CancelToken()
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        find_sequence_gaps([(key(1), None), (key(3), None)], cancel=token)

"""Missing document numbers per (model, series)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable

from efd.constants import PROGRESS_STEP
from efd.models import Document, Inconsistency, InconsistencyKind, LedgerFile, Severity
from efd.parsing.utils import is_valid_access_key, split_access_key, to_date
from efd.utils import CancelToken, ProgressTicker

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequenceGap:
    model: str
    series: str
    start: int
    end: int
    count: int
    # dates of the documents just before and after the hole
    previous_date: date | None = None
    next_date: date | None = None


def _entry(item) -> tuple[str, date | None]:
    if isinstance(item, Document):
        return item.access_key, item.issue_date
    if isinstance(item, dict):
        return str(item.get("access_key") or item.get("chave") or ""), to_date(
            item.get("date") or item.get("data")
        )
    key, when = item
    return str(key or ""), to_date(when)


def find_sequence_gaps(
    entries: Iterable, *, cancel: CancelToken | None = None
) -> list[SequenceGap]:
    """Return every hole in the numbering of each (model, series) group.

    ``entries`` holds ``(access_key, date)`` pairs, :class:`Document`
    objects or mappings with ``access_key``/``date``.  Keys that are not 44
    digits are skipped.  Groups keep the order in which they were first
    seen; inside a group gaps are ascending.
    """
    entries = list(entries)
    ticker = ProgressTicker(len(entries), PROGRESS_STEP, None, cancel)
    groups: dict[tuple[str, str], dict[int, date | None]] = {}
    skipped = 0
    for item in entries:
        ticker.tick()
        key, when = _entry(item)
        if not is_valid_access_key(key):
            skipped += 1
            continue
        model, series, number = split_access_key(key)
        numbers = groups.setdefault((model, series), {})
        if number not in numbers or numbers[number] is None:
            numbers[number] = when
    if skipped:
        log.debug("%d entries without a valid access key skipped", skipped)

    gaps: list[SequenceGap] = []
    for (model, series), numbers in groups.items():
        ordered = sorted(numbers)
        for current, nxt in zip(ordered, ordered[1:]):
            if nxt > current + 1:
                gaps.append(
                    SequenceGap(
                        model=model,
                        series=series,
                        start=current + 1,
                        end=nxt - 1,
                        count=nxt - current - 1,
                        previous_date=numbers[current],
                        next_date=numbers[nxt],
                    )
                )
    log.info("%d sequence gap(s) in %d series", len(gaps), len(groups))
    return gaps


def gap_entries_from_ledger(
    ledger: LedgerFile, *, own_only: bool = True
) -> list[tuple[str, date | None]]:
    """(key, date) pairs of the ledger's documents, cancelled ones included.

    Only documents issued by the taxpayer (``IND_EMIT = 0``) have a
    numbering the taxpayer controls; pass ``own_only=False`` to use all.
    """
    return [
        (doc.access_key, doc.issue_date)
        for doc in ledger.documents
        if doc.access_key and (not own_only or doc.issuer == "0")
    ]


def gap_inconsistencies(gaps: Iterable[SequenceGap]) -> list[Inconsistency]:
    out = []
    for gap in gaps:
        if gap.count == 1:
            text = f"Número {gap.start} ausente (modelo {gap.model}, série {gap.series})"
        else:
            text = (
                f"Números {gap.start} a {gap.end} ausentes "
                f"(modelo {gap.model}, série {gap.series})"
            )
        out.append(
            Inconsistency(
                kind=InconsistencyKind.SEQUENCE_GAP,
                severity=Severity.WARNING,
                # expected: numbers missing from the series, none found
                expected=Decimal(gap.count),
                found=Decimal("0"),
                difference=Decimal(gap.count),
                difference_pct=Decimal("100"),
                description=text,
                movement_date=gap.previous_date,
                references=(f"{gap.model}/{gap.series}",),
            )
        )
    return out

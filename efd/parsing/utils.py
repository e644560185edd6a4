"""Utility helpers for parsers."""
from __future__ import annotations

import re
from datetime import date, datetime

ACCESS_KEY_LEN = 44
_KEY_RE = re.compile(r"^\d{44}$")


def parse_sped_date(value: str | None) -> date | None:
    """Convert ledger ``DDMMYYYY`` into :class:`date` (``None`` if invalid)."""
    s = (value or "").strip()
    if len(s) != 8 or not s.isdigit():
        return None
    try:
        return datetime.strptime(s, "%d%m%Y").date()
    except ValueError:
        return None


def format_sped_date(value: date | str | None) -> str:
    """Inverse of :func:`parse_sped_date`; ISO strings are accepted too."""
    if not value:
        return ""
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value[:10])
        except ValueError:
            return ""
    return value.strftime("%d%m%Y")


def _normalize_date(date_str: str) -> str:
    """Convert ``DDMMYYYY``, ``DD/MM/YYYY`` or ISO timestamps into
    ``YYYY-MM-DD``."""
    s = date_str.replace(" ", "").replace("\xa0", "")
    m = re.match(r"(\d{4})-(\d{2})-(\d{2})", s)
    if m:
        y, mth, d = m.groups()
        return f"{y}-{mth}-{d}"
    m = re.match(r"(\d{2})(\d{2})(\d{4})$", s)
    if m:
        d, mth, y = m.groups()
        return f"{y}-{mth}-{d}"
    m = re.match(r"(\d{1,2})[./](\d{1,2})[./](\d{4})$", s)
    if m:
        d, mth, y = m.groups()
        return f"{y}-{int(mth):02d}-{int(d):02d}"
    return s


def to_date(value: date | str | None) -> date | None:
    """Best-effort conversion of any supported date text into :class:`date`."""
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(_normalize_date(value))
    except ValueError:
        return None


def clean_field(value: str | None) -> str:
    """Trim a text field and drop the ledger's delimiter character."""
    if not value:
        return ""
    return value.strip().replace("|", "")


def only_digits(value: str | None) -> str:
    return re.sub(r"\D+", "", value or "")


def is_valid_access_key(key: str | None) -> bool:
    return bool(key) and bool(_KEY_RE.match(key))


def split_access_key(key: str) -> tuple[str, str, int]:
    """Return ``(model, series, number)`` from a 44 digit access key.

    Offsets are fixed by the NF-e layout: model ``[20:22)``, series
    ``[22:25)`` and number ``[25:34)``.
    """
    if not is_valid_access_key(key):
        raise ValueError(f"invalid access key: {key!r}")
    return key[20:22], key[22:25], int(key[25:34])

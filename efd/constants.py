"""Project-wide constants and audit thresholds."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from os import getenv


def _env_bool(name: str, default: str | None = None) -> bool:
    """Return a boolean flag read from the environment."""

    value = getenv(name)
    if value is None:
        value = default if default is not None else "0"
    value = str(value).strip().lower()
    return value not in {"0", "false", "no", "off", ""}


def _env_decimal(name: str, default: Decimal | str) -> Decimal:
    """Return a non-negative :class:`Decimal` read from the environment."""

    fallback = Decimal(str(default))
    raw = getenv(name)
    if raw is None or str(raw).strip() == "":
        return abs(fallback)
    try:
        normalized = str(raw).strip().replace(",", ".")
        value = Decimal(normalized)
    except Exception:
        return abs(fallback)
    return abs(value) if value.is_finite() else abs(fallback)


def _env_int(name: str, default: int) -> int:
    raw = getenv(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _env_list(name: str, default: str) -> tuple[str, ...]:
    """Return a tuple of comma separated, non-empty tokens."""

    raw = getenv(name)
    if raw is None:
        raw = default
    return tuple(tok.strip() for tok in str(raw).split(",") if tok.strip())


def _env_limits(name: str) -> dict[str, Decimal]:
    """Parse ``code=pct`` pairs (``740=0.6,741=1.0``) into a mapping."""

    limits: dict[str, Decimal] = {}
    for token in _env_list(name, ""):
        code, sep, pct = token.partition("=")
        if not sep or not code.strip():
            continue
        try:
            limits[code.strip()] = abs(Decimal(pct.strip().replace(",", ".")))
        except Exception:
            continue
    return limits


# Minimum absolute difference worth reporting between two independently
# recorded quantities or values.
MIN_DIFF = _env_decimal("EFD_MIN_DIFF", "0.01")

# Loss/surplus ceilings for fuel inventory (percent of available volume).
# ANP Resolution 23/2004 sets 0.6% for liquid fuels; per product overrides
# come from EFD_FUEL_LOSS_LIMITS / EFD_FUEL_SURPLUS_LIMITS.
FUEL_LOSS_LIMIT_PCT = _env_decimal("EFD_FUEL_LOSS_LIMIT_PCT", "0.6")
FUEL_SURPLUS_LIMIT_PCT = _env_decimal("EFD_FUEL_SURPLUS_LIMIT_PCT", "0.6")
FUEL_LOSS_LIMITS = _env_limits("EFD_FUEL_LOSS_LIMITS")
FUEL_SURPLUS_LIMITS = _env_limits("EFD_FUEL_SURPLUS_LIMITS")

# Declared sales vs documents: max(pct of declared volume, absolute litres).
FUEL_DOC_TOLERANCE_PCT = _env_decimal("EFD_FUEL_DOC_TOLERANCE_PCT", "1")
FUEL_DOC_TOLERANCE_ABS = _env_decimal("EFD_FUEL_DOC_TOLERANCE_ABS", "10")
FUEL_ZSCORE = _env_decimal("EFD_FUEL_ZSCORE", "3")
FUEL_HISTORY_WINDOW = _env_int("EFD_FUEL_HISTORY_WINDOW", 7)
# Deviation (percent of the mean) flagged when the recent history is flat.
FUEL_VARIATION_PCT = _env_decimal("EFD_FUEL_VARIATION_PCT", "50")

FUEL_SALE_CFOPS = _env_list(
    "EFD_FUEL_SALE_CFOPS", "5102,5405,5656,5667,6102,6405,6656"
)
FUEL_ENTRY_CFOPS = _env_list(
    "EFD_FUEL_ENTRY_CFOPS", "1102,1403,1652,1653,2102,2403,2652,2653"
)

# ABC boundaries (cumulative percent of total value).
ABC_A_PCT = _env_decimal("EFD_ABC_A_PCT", "80")
ABC_B_PCT = _env_decimal("EFD_ABC_B_PCT", "95")
ABC_EPSILON = _env_decimal("EFD_ABC_EPSILON", "0.0001")

# Symbolic/remittance CFOPs left out of value comparisons.
IGNORED_CFOPS = _env_list("EFD_IGNORED_CFOPS", "5929,6929")

TOP_CFOPS = _env_int("EFD_TOP_CFOPS", 10)
PROGRESS_STEP = _env_int("EFD_PROGRESS_STEP", 200)
TRACE = _env_bool("EFD_TRACE", "0")


@dataclass(frozen=True)
class AuditThresholds:
    """Every numeric limit used by the reconciliation algorithms.

    Defaults come from the module constants above, so environment overrides
    apply to a bare ``AuditThresholds()``; callers may still pass explicit
    values per run.
    """

    min_diff: Decimal = MIN_DIFF
    fuel_loss_limit_pct: Decimal = FUEL_LOSS_LIMIT_PCT
    fuel_surplus_limit_pct: Decimal = FUEL_SURPLUS_LIMIT_PCT
    fuel_loss_limits: dict[str, Decimal] = field(
        default_factory=lambda: dict(FUEL_LOSS_LIMITS)
    )
    fuel_surplus_limits: dict[str, Decimal] = field(
        default_factory=lambda: dict(FUEL_SURPLUS_LIMITS)
    )
    # severity: WARNING above the limit, CRITICAL above limit * factor
    critical_factor: Decimal = Decimal("2")
    # relative difference (percent) above which a sum mismatch is CRITICAL
    sum_mismatch_critical_pct: Decimal = Decimal("1")
    stock_increase_critical_pct: Decimal = Decimal("5")
    doc_mismatch_critical_pct: Decimal = Decimal("5")
    fuel_doc_tolerance_pct: Decimal = FUEL_DOC_TOLERANCE_PCT
    fuel_doc_tolerance_abs: Decimal = FUEL_DOC_TOLERANCE_ABS
    fuel_zscore: Decimal = FUEL_ZSCORE
    fuel_history_window: int = FUEL_HISTORY_WINDOW
    fuel_history_min: int = 3
    fuel_variation_pct: Decimal = FUEL_VARIATION_PCT
    fuel_sale_cfops: tuple[str, ...] = FUEL_SALE_CFOPS
    fuel_entry_cfops: tuple[str, ...] = FUEL_ENTRY_CFOPS
    abc_a_pct: Decimal = ABC_A_PCT
    abc_b_pct: Decimal = ABC_B_PCT
    abc_epsilon: Decimal = ABC_EPSILON
    ignored_cfops: tuple[str, ...] = IGNORED_CFOPS
    top_cfops: int = TOP_CFOPS
    # day/CFOP comparison risk grading
    risk_high_abs: Decimal = Decimal("1000")
    risk_high_pct: Decimal = Decimal("5")
    risk_medium_abs: Decimal = Decimal("100")
    risk_medium_pct: Decimal = Decimal("1")

    def loss_limit(self, product_code: str) -> Decimal:
        return self.fuel_loss_limits.get(product_code, self.fuel_loss_limit_pct)

    def surplus_limit(self, product_code: str) -> Decimal:
        return self.fuel_surplus_limits.get(
            product_code, self.fuel_surplus_limit_pct
        )

from efd.constants import AuditThresholds
from .abc import AbcRow, abc_items_from_ledger, classify_abc
from .compare import compare_by_day_cfop, divergence_details, grade_risk
from .fuel import FuelSale, audit_fuel, audit_ledger_fuel, summarize_inconsistencies
from .gaps import SequenceGap, find_sequence_gaps, gap_inconsistencies
from .orphans import ReconciliationResult, orphan_inconsistencies, reconcile
from .taxes import TaxReport, aggregate_taxes, ledger_taxes

__all__ = [
    "AuditThresholds",
    "AbcRow",
    "abc_items_from_ledger",
    "classify_abc",
    "compare_by_day_cfop",
    "divergence_details",
    "grade_risk",
    "FuelSale",
    "audit_fuel",
    "audit_ledger_fuel",
    "summarize_inconsistencies",
    "SequenceGap",
    "find_sequence_gaps",
    "gap_inconsistencies",
    "ReconciliationResult",
    "orphan_inconsistencies",
    "reconcile",
    "TaxReport",
    "aggregate_taxes",
    "ledger_taxes",
]

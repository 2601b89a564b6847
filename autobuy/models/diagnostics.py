"""
Plan diagnostics.

Non-fatal conditions are recorded as structured entries (code + fields)
so downstream tools can pivot on them. Nothing here is ever raised.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DiagnosticCode(str, Enum):
    """Diagnostic codes; also used as unfilled reason codes."""

    MISSING_REFERENCE_PRICE = "MissingReferencePrice"
    STALE_REFERENCE_PRICE = "StaleReferencePrice"
    SELLER_BLOCKED = "SellerBlocked"
    CARD_BLOCKED = "CardBlocked"
    NO_OFFERS = "NoOffers"
    CANCELLED = "Cancelled"
    PRICE_CEILING_EXCEEDED = "PriceCeilingExceeded"
    CAP_HIT = "CapHit"
    SPECULATIVE_BUDGET_EXHAUSTED = "SpeculativeBudgetExhausted"
    FORCED_OVER_BUDGET = "ForcedOverBudget"


# Emission order: validation warnings, ceiling rejections, cap rejections,
# speculative trims, forced-override notices.
DIAGNOSTIC_CATEGORY: dict[DiagnosticCode, int] = {
    DiagnosticCode.MISSING_REFERENCE_PRICE: 0,
    DiagnosticCode.STALE_REFERENCE_PRICE: 0,
    DiagnosticCode.SELLER_BLOCKED: 0,
    DiagnosticCode.CARD_BLOCKED: 0,
    DiagnosticCode.NO_OFFERS: 0,
    DiagnosticCode.CANCELLED: 0,
    DiagnosticCode.PRICE_CEILING_EXCEEDED: 1,
    DiagnosticCode.CAP_HIT: 2,
    DiagnosticCode.SPECULATIVE_BUDGET_EXHAUSTED: 3,
    DiagnosticCode.FORCED_OVER_BUDGET: 4,
}


@dataclass(frozen=True)
class DiagnosticEntry:
    """One diagnostic record."""

    code: DiagnosticCode
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (
            DIAGNOSTIC_CATEGORY[self.code],
            self.code.value,
            json.dumps(self.fields, sort_keys=True),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, **self.fields}


class DiagnosticLog:
    """
    Accumulates diagnostics for one run.

    Identical entries are recorded once, so repeated cap checks against
    the same cap do not flood the plan.
    """

    def __init__(self) -> None:
        self._entries: list[DiagnosticEntry] = []
        self._seen: set[tuple[int, str, str]] = set()

    def record(self, code: DiagnosticCode, **fields: Any) -> None:
        entry = DiagnosticEntry(code=code, fields=fields)
        key = entry.sort_key
        if key in self._seen:
            return
        self._seen.add(key)
        self._entries.append(entry)

    def extend(self, entries: list[DiagnosticEntry]) -> None:
        for entry in entries:
            self.record(entry.code, **entry.fields)

    def entries(self) -> list[DiagnosticEntry]:
        return list(self._entries)

    def has(self, code: DiagnosticCode) -> bool:
        return any(entry.code == code for entry in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

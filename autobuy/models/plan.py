"""
Plan output records.

These are the values a planning run returns. They are immutable and
carry their own JSON rendering (camelCase keys, cents-rounded money).
"""

from dataclasses import dataclass
from typing import Any

from autobuy.models.diagnostics import DiagnosticEntry


def money(value: float) -> float:
    """Round a currency amount to cents for output."""
    return round(value + 0.0, 2)


@dataclass(frozen=True, slots=True)
class DemandAllocation:
    """Units of one line credited to one demand."""

    demand_id: str
    card_id: str
    quantity: int

    def to_dict(self) -> dict[str, Any]:
        return {"demandId": self.demand_id, "cardId": self.card_id, "quantity": self.quantity}


@dataclass(frozen=True, slots=True)
class LineItem:
    """Units bought from one offer."""

    card_id: str
    offer_ref: str
    unit_price: float
    quantity: int
    satisfies_demands: tuple[DemandAllocation, ...] = ()
    forced: bool = False

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "cardId": self.card_id,
            "offerRef": self.offer_ref,
            "unitPrice": money(self.unit_price),
            "quantity": self.quantity,
            "satisfiesDemands": [a.to_dict() for a in self.satisfies_demands],
        }


@dataclass(frozen=True, slots=True)
class Basket:
    """Everything bought from one seller in one order."""

    seller_id: str
    marketplace: str
    items: tuple[LineItem, ...]
    subtotal: float
    shipping: float
    total: float
    retail_total: float
    cost_ratio: float | None
    is_profitable: bool

    @property
    def ref(self) -> str:
        return f"{self.seller_id}@{self.marketplace}"

    @property
    def units(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sellerId": self.seller_id,
            "marketplace": self.marketplace,
            "items": [item.to_dict() for item in self.items],
            "subtotal": money(self.subtotal),
            "shipping": money(self.shipping),
            "total": money(self.total),
            "retailTotal": money(self.retail_total),
            "costRatio": None if self.cost_ratio is None else round(self.cost_ratio, 4),
            "isProfitable": self.is_profitable,
        }


@dataclass(frozen=True, slots=True)
class UnfilledDemand:
    """Demand quantity no line covers."""

    card_id: str
    remaining_quantity: int
    reason_code: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "cardId": self.card_id,
            "remainingQuantity": self.remaining_quantity,
            "reasonCode": self.reason_code,
        }


@dataclass(frozen=True, slots=True)
class ManifestLine:
    """One predicted purchase, persisted by the analytics store."""

    card_id: str
    predicted_unit_price: float
    quantity: int
    seller_id: str
    marketplace: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "cardId": self.card_id,
            "predictedUnitPrice": money(self.predicted_unit_price),
            "quantity": self.quantity,
            "sellerId": self.seller_id,
            "marketplace": self.marketplace,
        }


@dataclass(frozen=True, slots=True)
class BudgetSummary:
    """Budget utilization after planning."""

    total_spend: float
    max_total_spend: float
    effective_budget: float
    reserved_budget: float
    utilization_percent: float
    speculative_spend: float
    hard_budget_exceeded: bool
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSpend": money(self.total_spend),
            "maxTotalSpend": money(self.max_total_spend),
            "effectiveBudget": money(self.effective_budget),
            "reservedBudget": money(self.reserved_budget),
            "budgetUtilization": round(self.utilization_percent, 2),
            "speculativeSpend": money(self.speculative_spend),
            "hardBudgetExceeded": self.hard_budget_exceeded,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class Plan:
    """The result of one planning run."""

    baskets: tuple[Basket, ...] = ()
    unfilled: tuple[UnfilledDemand, ...] = ()
    diagnostics: tuple[DiagnosticEntry, ...] = ()
    manifest: tuple[ManifestLine, ...] = ()
    budget: BudgetSummary | None = None
    cancelled: bool = False

    @property
    def total_spend(self) -> float:
        return sum(basket.total for basket in self.baskets)

    @property
    def filled_units(self) -> int:
        return sum(basket.units for basket in self.baskets)

    def to_dict(self) -> dict[str, Any]:
        return {
            "baskets": [basket.to_dict() for basket in self.baskets],
            "unfilled": [entry.to_dict() for entry in self.unfilled],
            "diagnostics": [entry.to_dict() for entry in self.diagnostics],
            "manifest": [line.to_dict() for line in self.manifest],
            "budget": None if self.budget is None else self.budget.to_dict(),
            "cancelled": self.cancelled,
        }

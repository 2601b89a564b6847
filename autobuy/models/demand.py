"""
Demand records.

A demand is a desired quantity of one printing. Priorities only break
ties; they never make the planner skip a cheaper allocation.
"""

import math
from dataclasses import dataclass, field
from enum import Enum

from autobuy.models.failure import InvalidDemandError


class DemandPriority(str, Enum):
    """Where a demand came from."""

    DECK_ACTIVE = "deck-active"
    DECK_QUEUED = "deck-queued"
    ALERT_RESTOCK = "alert-restock"
    MANUAL = "manual"


# Lower rank is planned first among otherwise equal demands
PRIORITY_RANK: dict[DemandPriority, int] = {
    DemandPriority.MANUAL: 0,
    DemandPriority.DECK_ACTIVE: 1,
    DemandPriority.DECK_QUEUED: 2,
    DemandPriority.ALERT_RESTOCK: 3,
}


@dataclass(frozen=True, slots=True)
class Demand:
    """
    A desired quantity of a card.

    Attributes:
        card_id: Printing identifier (Scryfall UUID)
        quantity: Units wanted, always > 0
        max_unit_price: Hard per-unit ceiling, None means no ceiling
        priority: Origin of the demand, used as a tie-breaker
        source_tags: Free-form explanation tags ("deck:<name>", "alert", ...)
        demand_id: Identity within a run; defaults to the card id
        seller_id: Restricts allocation to one seller (forced buys only)
    """

    card_id: str
    quantity: int
    max_unit_price: float | None = None
    priority: DemandPriority = DemandPriority.DECK_ACTIVE
    source_tags: frozenset[str] = field(default_factory=frozenset)
    demand_id: str = ""
    seller_id: str | None = None

    def __post_init__(self) -> None:
        if not self.card_id:
            raise InvalidDemandError("demand is missing cardId")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise InvalidDemandError(f"{self.card_id}: quantity must be an integer")
        if self.quantity <= 0:
            raise InvalidDemandError(f"{self.card_id}: quantity {self.quantity} must be > 0")
        if self.max_unit_price is not None and not math.isfinite(self.max_unit_price):
            raise InvalidDemandError(f"{self.card_id}: maxUnitPrice must be a finite number")
        if self.max_unit_price is not None and self.max_unit_price < 0:
            raise InvalidDemandError(f"{self.card_id}: maxUnitPrice must be >= 0")
        if not self.demand_id:
            object.__setattr__(self, "demand_id", self.card_id)

    @property
    def is_manual(self) -> bool:
        return self.priority == DemandPriority.MANUAL

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.priority]


def merge_priority(a: DemandPriority, b: DemandPriority) -> DemandPriority:
    """Return the more urgent of two priorities."""
    return a if PRIORITY_RANK[a] <= PRIORITY_RANK[b] else b


def merge_ceiling(a: float | None, b: float | None) -> float | None:
    """Keep the lower of two ceilings; None means unbounded."""
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)

"""
Budget configuration.

INVARIANTS:
- All caps are non-negative
- No per-seller or per-card cap exceeds the total cap
- reserve_budget_percent lies in [0, 100)

STRICT mode rejects any line that would cross a cap. RELAXED mode only
treats the total-spend and speculative caps as hard.
"""

import math
from dataclasses import dataclass
from enum import Enum

from autobuy.models.failure import InconsistentBudgetError


class BudgetMode(str, Enum):
    STRICT = "STRICT"
    RELAXED = "RELAXED"


class CapDimension(str, Enum):
    """The budget dimension a cap check failed on."""

    TOTAL = "total"
    PER_SELLER = "perSeller"
    PER_CARD = "perCard"
    PARTITION = "partition"
    SPECULATIVE = "speculative"


@dataclass(frozen=True, slots=True)
class BudgetConfig:
    """
    Spend limits for one planning run.

    Attributes:
        max_total_spend: Hard ceiling on the sum of basket totals
        max_per_seller: Ceiling on basket totals per seller (None = no cap)
        max_per_card: Ceiling on line spend per card (None = no cap)
        max_speculative_spend: Ceiling on unprofitable basket totals (None = no cap)
        reserve_budget_percent: Share of max_total_spend held back
        max_cost_ratio: Basket total / retail total at or below which a basket is profitable
        mode: STRICT or RELAXED cap enforcement
    """

    max_total_spend: float
    max_per_seller: float | None = None
    max_per_card: float | None = None
    max_speculative_spend: float | None = None
    reserve_budget_percent: float = 0.0
    max_cost_ratio: float = 1.0
    mode: BudgetMode = BudgetMode.STRICT

    def __post_init__(self) -> None:
        caps = {
            "maxTotalSpend": self.max_total_spend,
            "maxPerSeller": self.max_per_seller,
            "maxPerCard": self.max_per_card,
            "maxSpeculativeSpend": self.max_speculative_spend,
        }
        numbers = {
            **caps,
            "reserveBudgetPercent": self.reserve_budget_percent,
            "maxCostRatio": self.max_cost_ratio,
        }
        for name, value in numbers.items():
            if value is not None and not math.isfinite(value):
                raise InconsistentBudgetError(f"{name} {value} must be a finite number")
        for name, value in caps.items():
            if value is not None and value < 0:
                raise InconsistentBudgetError(f"{name} {value} must be >= 0")

        if self.max_per_seller is not None and self.max_per_seller > self.max_total_spend:
            raise InconsistentBudgetError(
                f"maxPerSeller {self.max_per_seller} exceeds maxTotalSpend {self.max_total_spend}"
            )
        if self.max_per_card is not None and self.max_per_card > self.max_total_spend:
            raise InconsistentBudgetError(
                f"maxPerCard {self.max_per_card} exceeds maxTotalSpend {self.max_total_spend}"
            )
        if not 0 <= self.reserve_budget_percent < 100:
            raise InconsistentBudgetError(
                f"reserveBudgetPercent {self.reserve_budget_percent} must be in [0, 100)"
            )
        if self.max_cost_ratio <= 0:
            raise InconsistentBudgetError(f"maxCostRatio {self.max_cost_ratio} must be > 0")

    @property
    def is_strict(self) -> bool:
        return self.mode == BudgetMode.STRICT

    @property
    def reserved_budget(self) -> float:
        """Amount held back from allocation."""
        return self.max_total_spend * self.reserve_budget_percent / 100

    @property
    def effective_total_spend(self) -> float:
        """Total cap the planner allocates against."""
        return self.max_total_spend - self.reserved_budget

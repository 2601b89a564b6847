"""
Planning request envelope and cooperative cancellation.
"""

from dataclasses import dataclass, field
from threading import Event

from autobuy.models.budget import BudgetConfig
from autobuy.models.demand import Demand
from autobuy.models.directive import Directive
from autobuy.models.inventory import InventorySnapshot
from autobuy.models.offer import Offer
from autobuy.models.sources import DemandSources


class CancellationToken:
    """
    Cooperative cancellation flag.

    The planner checks it between passes and between sellers in the
    consolidation pass. It may be set from another thread.
    """

    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PlanRequest:
    """
    Everything one planning run consumes.

    All I/O (fetching offers, reading inventory, reference prices) is
    complete before a request is built.
    """

    budget: BudgetConfig
    demands: list[Demand] = field(default_factory=list)
    directives: list[Directive] = field(default_factory=list)
    offers: list[Offer] = field(default_factory=list)
    hot_list: list[str] = field(default_factory=list)
    reference_prices: dict[str, float] = field(default_factory=dict)
    reference_price_age_hours: dict[str, float] = field(default_factory=dict)
    inventory: InventorySnapshot = field(default_factory=InventorySnapshot)
    demand_sources: DemandSources | None = None
    include_card_kingdom_fallback: bool = False
    cancel: CancellationToken | None = None

"""
Demand source records: decks and inventory rows as the operator keeps them.
"""

from dataclasses import dataclass, field
from enum import Enum


class DeckStatus(str, Enum):
    ACTIVE = "active"
    QUEUED = "queued"
    SOLD = "sold"
    ARCHIVED = "archived"


@dataclass
class Deck:
    """A deck being assembled for sale. `cards` maps card id to quantity."""

    deck_id: str
    name: str
    status: DeckStatus
    cards: dict[str, int] = field(default_factory=dict)


@dataclass
class InventoryRow:
    """One inventory row with its low-stock alert settings."""

    card_id: str
    quantity: int
    reserved: int = 0
    alert_enabled: bool = False
    alert_threshold: int = 0

    @property
    def available(self) -> int:
        return max(0, self.quantity - self.reserved)


@dataclass
class DemandOptions:
    include_queued_decks: bool = False
    price_threshold_percent: float = 100.0
    reference_prices: dict[str, float] = field(default_factory=dict)


@dataclass
class DemandSources:
    """Inputs the Demand Builder derives net demand from."""

    decks: list[Deck] = field(default_factory=list)
    inventory: list[InventoryRow] = field(default_factory=list)
    include_queued_decks: bool = False

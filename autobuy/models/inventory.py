"""
Inventory snapshot - immutable on-hand counts for one planning run.

INVARIANT: Only cards with available > 0 appear in the snapshot.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class InventorySnapshot:
    """
    On-hand minus reserved units per card, as of planning start.

    Usage:
        snapshot = InventorySnapshot.from_dict({"card-a": 3})
        snapshot.available("card-a")  # 3
        snapshot.available("card-b")  # 0
    """

    _cards: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for card_id, count in self._cards.items():
            if count <= 0:
                raise ValueError(f"Card '{card_id}' has invalid count {count} (must be > 0)")

    @classmethod
    def from_dict(cls, cards: dict[str, int]) -> "InventorySnapshot":
        """Build a snapshot, dropping cards with nothing available."""
        filtered = {card_id: count for card_id, count in cards.items() if count > 0}
        return cls(_cards=filtered)

    def __contains__(self, card_id: str) -> bool:
        return card_id in self._cards

    def __len__(self) -> int:
        return len(self._cards)

    def __iter__(self) -> Iterator[str]:
        return iter(self._cards)

    def available(self, card_id: str) -> int:
        """Units on hand for a card (0 when absent)."""
        return self._cards.get(card_id, 0)

    def net_of(self, card_id: str, quantity: int) -> int:
        """Quantity still needed after using what is on hand."""
        return max(0, quantity - self.available(card_id))

    def to_dict(self) -> dict[str, int]:
        return dict(self._cards)

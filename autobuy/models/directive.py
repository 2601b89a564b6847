"""
Operator directives.

A directive is one of a closed set of record types. The resolver
dispatches on the type and applies them in a fixed order, so the order
directives arrive in never changes a plan.
"""

import math
from dataclasses import dataclass

from autobuy.models.failure import InvalidDirectiveError


@dataclass(frozen=True, slots=True)
class ForceInclude:
    """Always buy `quantity` of a card, optionally from one seller."""

    card_id: str
    quantity: int = 1
    seller_id: str | None = None
    reason: str = "operator"

    def __post_init__(self) -> None:
        if not self.card_id:
            raise InvalidDirectiveError("ForceInclude is missing cardId")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise InvalidDirectiveError(f"ForceInclude {self.card_id}: quantity must be an integer")
        if self.quantity <= 0:
            raise InvalidDirectiveError(f"ForceInclude {self.card_id}: quantity must be > 0")


@dataclass(frozen=True, slots=True)
class BlockSeller:
    """Never buy from this seller."""

    seller_id: str
    reason: str = ""

    def __post_init__(self) -> None:
        if not self.seller_id:
            raise InvalidDirectiveError("BlockSeller is missing sellerId")


@dataclass(frozen=True, slots=True)
class BlockCard:
    """Never buy this card."""

    card_id: str
    reason: str = ""

    def __post_init__(self) -> None:
        if not self.card_id:
            raise InvalidDirectiveError("BlockCard is missing cardId")


@dataclass(frozen=True, slots=True)
class SubstitutionGroup:
    """Cards the operator declares mutually fungible."""

    group_id: str
    card_ids: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.group_id:
            raise InvalidDirectiveError("SubstitutionGroup is missing groupId")
        if len(self.card_ids) < 2:
            raise InvalidDirectiveError(
                f"SubstitutionGroup {self.group_id}: needs at least two cards"
            )
        if any(not card_id for card_id in self.card_ids):
            raise InvalidDirectiveError(f"SubstitutionGroup {self.group_id}: empty cardId")


@dataclass(frozen=True, slots=True)
class BudgetPartition:
    """Cap spend on lines whose demand carries `tag`."""

    tag: str
    cap: float

    def __post_init__(self) -> None:
        if not self.tag:
            raise InvalidDirectiveError("BudgetPartition is missing tag")
        if not math.isfinite(self.cap) or self.cap < 0:
            raise InvalidDirectiveError(
                f"BudgetPartition {self.tag}: cap must be a finite number >= 0"
            )


Directive = ForceInclude | BlockSeller | BlockCard | SubstitutionGroup | BudgetPartition

"""
Directive Resolver.

Applies operator overrides in a fixed order, independent of the order
directives arrive in:

1. BlockCard: demands for blocked cards are removed.
2. BlockSeller: sellers recorded so the offer normalizer drops them.
3. SubstitutionGroup: union-find over the groups; a card in two groups
   is rejected with OverlappingSubstitutionGroupsError.
4. ForceInclude: synthetic manual demands tagged "force:<reason>".
5. BudgetPartition: tag -> cap pairs for the planner.

INVARIANTS:
- Resolving an already resolved demand list with the same directives
  returns the same demands (forced demands carry stable ids).
- Substitution classes are disjoint and every member maps to the same
  sorted tuple.
"""

import logging
from dataclasses import dataclass, field

from autobuy.models.demand import Demand, DemandPriority
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticEntry
from autobuy.models.directive import (
    BlockCard,
    BlockSeller,
    BudgetPartition,
    Directive,
    ForceInclude,
    SubstitutionGroup,
)
from autobuy.models.failure import InvalidDirectiveError, OverlappingSubstitutionGroupsError

logger = logging.getLogger(__name__)

FORCE_ID_PREFIX = "force:"


@dataclass
class ResolvedDirectives:
    """Resolver output consumed by the normalizer and planner."""

    demands: list[Demand]
    blocked_cards: dict[str, str] = field(default_factory=dict)
    blocked_sellers: dict[str, str] = field(default_factory=dict)
    classes: dict[str, tuple[str, ...]] = field(default_factory=dict)
    partitions: dict[str, float] = field(default_factory=dict)
    diagnostics: list[DiagnosticEntry] = field(default_factory=list)

    def class_of(self, card_id: str) -> tuple[str, ...]:
        """Cards fungible with `card_id`, itself included, sorted."""
        return self.classes.get(card_id, (card_id,))

    def is_seller_blocked(self, seller_id: str) -> bool:
        return seller_id in self.blocked_sellers


class UnionFind:
    """Disjoint sets over card ids."""

    def __init__(self) -> None:
        self._parent: dict[str, str] = {}

    def find(self, item: str) -> str:
        parent = self._parent.setdefault(item, item)
        if parent != item:
            parent = self.find(parent)
            self._parent[item] = parent
        return parent

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        # Smaller id becomes the root so the structure is order independent
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a

    def groups(self) -> dict[str, tuple[str, ...]]:
        members: dict[str, list[str]] = {}
        for item in self._parent:
            members.setdefault(self.find(item), []).append(item)
        return {root: tuple(sorted(items)) for root, items in members.items()}


def build_substitution_classes(groups: list[SubstitutionGroup]) -> dict[str, tuple[str, ...]]:
    """
    Close the declared groups into card -> class mappings.

    Raises:
        OverlappingSubstitutionGroupsError: If any card appears in two groups
    """
    owner: dict[str, str] = {}
    seen_ids: set[str] = set()
    uf = UnionFind()

    for group in sorted(groups, key=lambda g: g.group_id):
        if group.group_id in seen_ids:
            raise InvalidDirectiveError(f"duplicate SubstitutionGroup id '{group.group_id}'")
        seen_ids.add(group.group_id)

        for card_id in group.card_ids:
            previous = owner.get(card_id)
            if previous is not None and previous != group.group_id:
                raise OverlappingSubstitutionGroupsError(card_id, previous, group.group_id)
            owner[card_id] = group.group_id

        first = group.card_ids[0]
        for card_id in group.card_ids[1:]:
            uf.union(first, card_id)

    classes: dict[str, tuple[str, ...]] = {}
    for members in uf.groups().values():
        for card_id in members:
            classes[card_id] = members
    return classes


def _force_demand(index: int, directive: ForceInclude) -> Demand:
    return Demand(
        card_id=directive.card_id,
        quantity=directive.quantity,
        max_unit_price=None,
        priority=DemandPriority.MANUAL,
        source_tags=frozenset({f"force:{directive.reason}"}),
        demand_id=f"{FORCE_ID_PREFIX}{index}:{directive.card_id}",
        seller_id=directive.seller_id,
    )


def resolve_directives(demands: list[Demand], directives: list[Directive]) -> ResolvedDirectives:
    """
    Apply operator directives to a demand list.

    Args:
        demands: Net demands from the demand builder or the request
        directives: Operator directives in any order

    Returns:
        ResolvedDirectives with demands sorted by demand id

    Raises:
        OverlappingSubstitutionGroupsError: If two groups share a card
        InvalidDirectiveError: On duplicate group ids or partition tags
    """
    block_cards = [d for d in directives if isinstance(d, BlockCard)]
    block_sellers = [d for d in directives if isinstance(d, BlockSeller)]
    groups = [d for d in directives if isinstance(d, SubstitutionGroup)]
    forces = [d for d in directives if isinstance(d, ForceInclude)]
    partitions = [d for d in directives if isinstance(d, BudgetPartition)]

    resolved = ResolvedDirectives(demands=[])
    diagnostics: list[DiagnosticEntry] = []

    # 1. BlockCard
    for directive in sorted(block_cards, key=lambda d: (d.card_id, d.reason)):
        resolved.blocked_cards.setdefault(directive.card_id, directive.reason)

    kept: list[Demand] = []
    for demand in demands:
        if demand.card_id in resolved.blocked_cards:
            diagnostics.append(
                DiagnosticEntry(DiagnosticCode.CARD_BLOCKED, {"cardId": demand.card_id})
            )
            continue
        kept.append(demand)

    # 2. BlockSeller
    for directive in sorted(block_sellers, key=lambda d: (d.seller_id, d.reason)):
        resolved.blocked_sellers.setdefault(directive.seller_id, directive.reason)

    # 3. SubstitutionGroup
    resolved.classes = build_substitution_classes(groups)

    # 4. ForceInclude
    existing_ids = {demand.demand_id for demand in kept}
    ordered_forces = sorted(
        forces, key=lambda d: (d.card_id, d.seller_id or "", d.quantity, d.reason)
    )
    for index, directive in enumerate(ordered_forces):
        if directive.card_id in resolved.blocked_cards:
            diagnostics.append(
                DiagnosticEntry(DiagnosticCode.CARD_BLOCKED, {"cardId": directive.card_id})
            )
            continue
        if directive.seller_id is not None and directive.seller_id in resolved.blocked_sellers:
            diagnostics.append(
                DiagnosticEntry(DiagnosticCode.SELLER_BLOCKED, {"sellerId": directive.seller_id})
            )
            continue
        forced = _force_demand(index, directive)
        if forced.demand_id in existing_ids:
            continue
        existing_ids.add(forced.demand_id)
        kept.append(forced)

    # 5. BudgetPartition
    for directive in sorted(partitions, key=lambda d: d.tag):
        if directive.tag in resolved.partitions:
            raise InvalidDirectiveError(f"duplicate BudgetPartition tag '{directive.tag}'")
        resolved.partitions[directive.tag] = directive.cap

    resolved.demands = sorted(kept, key=lambda d: d.demand_id)
    resolved.diagnostics = diagnostics

    logger.info(
        "directives_resolved",
        extra={
            "demands": len(resolved.demands),
            "forced": sum(1 for d in resolved.demands if d.is_manual),
            "blocked_cards": len(resolved.blocked_cards),
            "blocked_sellers": len(resolved.blocked_sellers),
            "substitution_classes": len(set(resolved.classes.values())),
            "partitions": len(resolved.partitions),
        },
    )

    return resolved

"""
Demand Builder.

Turns decks, inventory alert rows and on-hand counts into net demand:

1. Deck demand: quantities summed per card across active decks
   (and queued decks when enabled), tagged "deck:<name>".
2. Alert demand: max(0, threshold - available) for rows with alerts on.
3. Pointwise MAXIMUM of the two per card. A restock floor and deck usage
   overlap; they are not additive.
4. Inventory subtracted, floored at zero; zero demands dropped.
5. Ceiling = reference price * price_threshold_percent / 100 when a
   reference price exists, otherwise unset and reported.
"""

import logging
from dataclasses import dataclass, field

from autobuy.models.demand import Demand, DemandPriority, merge_ceiling, merge_priority
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticEntry
from autobuy.models.failure import InvalidDemandError
from autobuy.models.inventory import InventorySnapshot
from autobuy.models.sources import Deck, DeckStatus, DemandOptions, InventoryRow

logger = logging.getLogger(__name__)

# Any single card quantity above this is treated as corrupt input
MAX_CARD_QUANTITY = 10_000

ALERT_TAG = "alert"


@dataclass
class DemandSummary:
    total_cards_needed: int = 0
    unique_cards_needed: int = 0
    deck_demand_cards: int = 0
    alert_demand_cards: int = 0
    covered_by_inventory: int = 0


@dataclass
class DemandBuildResult:
    demands: list[Demand]
    summary: DemandSummary
    diagnostics: list[DiagnosticEntry] = field(default_factory=list)


@dataclass
class _DeckDemand:
    quantity: int = 0
    deck_names: list[str] = field(default_factory=list)
    active: bool = False


def _check_quantity(card_id: str, quantity: int, source: str) -> None:
    if not card_id:
        raise InvalidDemandError(f"{source}: row is missing cardId")
    if quantity < 0 or quantity > MAX_CARD_QUANTITY:
        raise InvalidDemandError(f"{source} {card_id}: quantity {quantity} is out of range")


def calculate_deck_demand(decks: list[Deck], include_queued: bool) -> dict[str, _DeckDemand]:
    """Sum card quantities across active (and optionally queued) decks."""
    demand: dict[str, _DeckDemand] = {}

    for deck in sorted(decks, key=lambda d: (d.name, d.deck_id)):
        is_active = deck.status == DeckStatus.ACTIVE
        if not is_active and not (include_queued and deck.status == DeckStatus.QUEUED):
            continue

        for card_id, quantity in deck.cards.items():
            _check_quantity(card_id, quantity, f"deck '{deck.name}'")
            if quantity == 0:
                continue
            entry = demand.setdefault(card_id, _DeckDemand())
            entry.quantity += quantity
            entry.deck_names.append(deck.name)
            entry.active = entry.active or is_active

    return demand


def calculate_alert_demand(rows: list[InventoryRow]) -> dict[str, int]:
    """Deficit below the alert threshold for rows with alerts enabled."""
    demand: dict[str, int] = {}

    for row in rows:
        _check_quantity(row.card_id, row.quantity, "inventory")
        if row.reserved < 0 or row.alert_threshold < 0:
            raise InvalidDemandError(f"inventory {row.card_id}: negative reserved or threshold")
        if not row.alert_enabled or row.alert_threshold <= 0:
            continue

        deficit = max(0, row.alert_threshold - row.available)
        if deficit > 0:
            demand[row.card_id] = max(demand.get(row.card_id, 0), deficit)

    return demand


def build_inventory_snapshot(rows: list[InventoryRow]) -> InventorySnapshot:
    """Sum available (unreserved) units per card."""
    available: dict[str, int] = {}
    for row in rows:
        available[row.card_id] = available.get(row.card_id, 0) + row.available
    return InventorySnapshot.from_dict(available)


def ceiling_for(
    card_id: str,
    reference_prices: dict[str, float],
    price_threshold_percent: float,
) -> float | None:
    """Per-unit ceiling from the retail reference, None without one."""
    reference = reference_prices.get(card_id)
    if reference is None or reference <= 0:
        return None
    return reference * price_threshold_percent / 100


def build_demand(
    decks: list[Deck],
    inventory: list[InventoryRow],
    options: DemandOptions,
) -> DemandBuildResult:
    """
    Build the net demand list from decks and inventory.

    Args:
        decks: Decks with status and card quantities
        inventory: Inventory rows with alert settings
        options: Queued-deck inclusion, price threshold and reference prices

    Returns:
        DemandBuildResult with demands sorted by quantity descending

    Raises:
        InvalidDemandError: On negative or out-of-range quantities
    """
    deck_demand = calculate_deck_demand(decks, options.include_queued_decks)
    alert_demand = calculate_alert_demand(inventory)
    snapshot = build_inventory_snapshot(inventory)

    summary = DemandSummary()
    diagnostics: list[DiagnosticEntry] = []
    demands: list[Demand] = []

    for card_id in sorted(set(deck_demand) | set(alert_demand)):
        deck = deck_demand.get(card_id)
        deck_qty = deck.quantity if deck else 0
        alert_qty = alert_demand.get(card_id, 0)
        gross = max(deck_qty, alert_qty)
        net = snapshot.net_of(card_id, gross)

        summary.deck_demand_cards += deck_qty
        summary.alert_demand_cards += alert_qty
        summary.covered_by_inventory += min(snapshot.available(card_id), gross)

        if net == 0:
            continue

        tags: set[str] = set()
        if deck:
            tags.update(f"deck:{name}" for name in deck.deck_names)
            priority = DemandPriority.DECK_ACTIVE if deck.active else DemandPriority.DECK_QUEUED
        else:
            priority = DemandPriority.ALERT_RESTOCK
        if alert_qty > 0:
            tags.add(ALERT_TAG)

        ceiling = ceiling_for(card_id, options.reference_prices, options.price_threshold_percent)
        if ceiling is None:
            diagnostics.append(
                DiagnosticEntry(DiagnosticCode.MISSING_REFERENCE_PRICE, {"cardId": card_id})
            )

        demands.append(
            Demand(
                card_id=card_id,
                quantity=net,
                max_unit_price=ceiling,
                priority=priority,
                source_tags=frozenset(tags),
            )
        )
        summary.total_cards_needed += net

    demands.sort(key=lambda d: (-d.quantity, d.card_id))
    summary.unique_cards_needed = len(demands)

    logger.info(
        "demand_built",
        extra={
            "unique_cards": summary.unique_cards_needed,
            "total_cards": summary.total_cards_needed,
            "covered_by_inventory": summary.covered_by_inventory,
        },
    )

    return DemandBuildResult(demands=demands, summary=summary, diagnostics=diagnostics)


def merge_request_demands(
    demands: list[Demand],
    inventory: InventorySnapshot,
    reference_prices: dict[str, float],
    price_threshold_percent: float,
) -> tuple[list[Demand], list[DiagnosticEntry]]:
    """
    Canonicalize demands handed to the planner directly.

    Duplicates per card are merged (quantities summed, lowest ceiling,
    most urgent priority, tags unioned), on-hand inventory is subtracted
    and missing ceilings are derived from reference prices.
    """
    merged: dict[str, Demand] = {}
    for demand in demands:
        existing = merged.get(demand.card_id)
        if existing is None:
            merged[demand.card_id] = demand
            continue
        merged[demand.card_id] = Demand(
            card_id=demand.card_id,
            quantity=existing.quantity + demand.quantity,
            max_unit_price=merge_ceiling(existing.max_unit_price, demand.max_unit_price),
            priority=merge_priority(existing.priority, demand.priority),
            source_tags=existing.source_tags | demand.source_tags,
        )

    result: list[Demand] = []
    diagnostics: list[DiagnosticEntry] = []
    for card_id in sorted(merged):
        demand = merged[card_id]
        net = inventory.net_of(card_id, demand.quantity)
        if net == 0:
            continue

        ceiling = demand.max_unit_price
        if ceiling is None:
            ceiling = ceiling_for(card_id, reference_prices, price_threshold_percent)
        if card_id not in reference_prices:
            diagnostics.append(
                DiagnosticEntry(DiagnosticCode.MISSING_REFERENCE_PRICE, {"cardId": card_id})
            )

        result.append(
            Demand(
                card_id=card_id,
                quantity=net,
                max_unit_price=ceiling,
                priority=demand.priority,
                source_tags=demand.source_tags,
            )
        )

    return result, diagnostics


def merge_pointwise_max(first: list[Demand], second: list[Demand]) -> list[Demand]:
    """Combine two net demand lists, keeping the larger quantity per card."""
    merged: dict[str, Demand] = {d.card_id: d for d in first}
    for demand in second:
        existing = merged.get(demand.card_id)
        if existing is None:
            merged[demand.card_id] = demand
            continue
        merged[demand.card_id] = Demand(
            card_id=demand.card_id,
            quantity=max(existing.quantity, demand.quantity),
            max_unit_price=merge_ceiling(existing.max_unit_price, demand.max_unit_price),
            priority=merge_priority(existing.priority, demand.priority),
            source_tags=existing.source_tags | demand.source_tags,
        )
    return [merged[card_id] for card_id in sorted(merged)]

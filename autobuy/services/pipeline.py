"""
Planning entry point.

Runs the stages left to right:

    demand building -> directive resolution -> offer normalization
    -> substitution expansion -> planner passes A-E (with shipping
    top-up and local improvement before D) -> plan emission

The whole call is synchronous and pure: the request carries every input
and nothing is read from the network, disk or clock.
"""

import logging

from autobuy.config import Settings
from autobuy.config import settings as default_settings
from autobuy.models.demand import Demand, DemandPriority
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticEntry
from autobuy.models.inventory import InventorySnapshot
from autobuy.models.plan import Plan
from autobuy.models.request import PlanRequest
from autobuy.models.sources import DemandOptions
from autobuy.services.demand_builder import (
    build_demand,
    ceiling_for,
    merge_pointwise_max,
    merge_request_demands,
)
from autobuy.services.directive_resolver import ResolvedDirectives, resolve_directives
from autobuy.services.marketplace import card_kingdom_offers
from autobuy.services.offer_normalizer import normalize_offers
from autobuy.services.plan_emitter import emit_plan
from autobuy.services.planner import (
    PlannerContext,
    PlannerWeights,
    build_card_ceilings,
    plan_baskets,
)
from autobuy.services.substitution import SubstitutionExpander

logger = logging.getLogger(__name__)


def prepare_demands(
    request: PlanRequest,
    settings: Settings,
) -> tuple[list[Demand], list[DiagnosticEntry]]:
    """Canonical net demand from explicit demands and optional sources."""
    demands, diagnostics = merge_request_demands(
        request.demands,
        request.inventory,
        request.reference_prices,
        settings.price_threshold_percent,
    )

    sources = request.demand_sources
    if sources is not None:
        built = build_demand(
            sources.decks,
            sources.inventory,
            DemandOptions(
                include_queued_decks=sources.include_queued_decks,
                price_threshold_percent=settings.price_threshold_percent,
                reference_prices=request.reference_prices,
            ),
        )
        demands = merge_pointwise_max(demands, built.demands)
        diagnostics.extend(built.diagnostics)

    return demands, diagnostics


def stale_reference_diagnostics(
    card_ids: set[str],
    ages: dict[str, float],
    max_age_hours: float,
) -> list[DiagnosticEntry]:
    return [
        DiagnosticEntry(
            DiagnosticCode.STALE_REFERENCE_PRICE,
            {"cardId": card_id, "ageHours": ages[card_id]},
        )
        for card_id in sorted(card_ids)
        if card_id in ages and ages[card_id] > max_age_hours
    ]


def fallback_quantities(resolved: ResolvedDirectives) -> dict[str, int]:
    """Units per card the Card Kingdom fallback should list."""
    quantities: dict[str, int] = {}
    for demand in resolved.demands:
        quantities[demand.card_id] = quantities.get(demand.card_id, 0) + demand.quantity
    return quantities


def hot_list_demands(
    hot_list: list[str],
    resolved: ResolvedDirectives,
    inventory: InventorySnapshot,
    reference_prices: dict[str, float],
    settings: Settings,
) -> list[Demand]:
    """
    Optional top-up demand for each hot-list card.

    A card is topped up toward `hot_list_target_inventory` units, less what
    is on hand and what is already demanded. Cards without a reference
    price (and so without a ceiling) or blocked by directive are skipped.
    """
    wanted = fallback_quantities(resolved)
    demands: list[Demand] = []
    for card_id in sorted(set(hot_list)):
        if card_id in resolved.blocked_cards:
            continue
        ceiling = ceiling_for(card_id, reference_prices, settings.price_threshold_percent)
        if ceiling is None:
            continue
        deficit = (
            settings.hot_list_target_inventory
            - inventory.available(card_id)
            - wanted.get(card_id, 0)
        )
        if deficit <= 0:
            continue
        demands.append(
            Demand(
                card_id=card_id,
                quantity=deficit,
                max_unit_price=ceiling,
                priority=DemandPriority.ALERT_RESTOCK,
                source_tags=frozenset({"hot-list"}),
                demand_id=f"hot:{card_id}",
            )
        )
    return demands


def plan_purchases(request: PlanRequest, settings: Settings | None = None) -> Plan:
    """
    Produce a purchase plan.

    Args:
        request: Demands, offers, directives, references and budget
        settings: Tunables; defaults to the environment settings

    Returns:
        The plan. Unfilled demand and non-fatal problems are reported in it.

    Raises:
        PlanInputError: On structural input violations
        ValueError: If the configured score weights are misordered or not positive
    """
    settings = settings or default_settings
    weights = PlannerWeights.from_settings(settings)

    demands, diagnostics = prepare_demands(request, settings)
    resolved = resolve_directives(demands, request.directives)
    diagnostics.extend(resolved.diagnostics)

    offers = list(request.offers)
    if request.include_card_kingdom_fallback:
        quantities = fallback_quantities(resolved)
        offers.extend(card_kingdom_offers(list(quantities), request.reference_prices, quantities))

    hot = hot_list_demands(
        request.hot_list, resolved, request.inventory, request.reference_prices, settings
    )
    book = normalize_offers(
        offers, [*resolved.demands, *hot], resolved, settings.expected_basket_size
    )
    diagnostics.extend(book.diagnostics)
    diagnostics.extend(
        stale_reference_diagnostics(
            {d.card_id for d in resolved.demands},
            request.reference_price_age_hours,
            settings.stale_reference_hours,
        )
    )

    ctx = PlannerContext(
        demands={demand.demand_id: demand for demand in [*resolved.demands, *hot]},
        book=book,
        expander=SubstitutionExpander(book, resolved),
        resolved=resolved,
        budget=request.budget,
        weights=weights,
        reference_prices=request.reference_prices,
        card_ceilings=build_card_ceilings(
            resolved.demands, request.reference_prices, settings.price_threshold_percent
        ),
        hot_cards=frozenset(request.hot_list),
        optional=frozenset(demand.demand_id for demand in hot),
        improvement_rounds=settings.local_improvement_rounds,
        cancel=request.cancel,
    )
    result = plan_baskets(ctx)

    return emit_plan(result, request.budget, diagnostics, settings)

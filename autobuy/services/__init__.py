"""
Autobuy services.

The planning pipeline stages and the offer sources that feed them.
"""

from autobuy.services.analytics import JsonLinesManifestSink, ManifestSink, publish_manifest
from autobuy.services.demand_builder import build_demand, merge_request_demands
from autobuy.services.directive_resolver import ResolvedDirectives, resolve_directives
from autobuy.services.marketplace import card_kingdom_offers, normalize_tcgplayer_listings
from autobuy.services.offer_normalizer import OfferBook, normalize_offers
from autobuy.services.pipeline import plan_purchases
from autobuy.services.plan_emitter import emit_plan, plan_to_json
from autobuy.services.planner import PlannerContext, PlannerWeights, plan_baskets
from autobuy.services.substitution import SubstitutionExpander

__all__ = [
    "JsonLinesManifestSink",
    "ManifestSink",
    "OfferBook",
    "PlannerContext",
    "PlannerWeights",
    "ResolvedDirectives",
    "SubstitutionExpander",
    "build_demand",
    "card_kingdom_offers",
    "emit_plan",
    "merge_request_demands",
    "normalize_offers",
    "normalize_tcgplayer_listings",
    "plan_baskets",
    "plan_purchases",
    "plan_to_json",
    "publish_manifest",
    "resolve_directives",
]

"""
Offer Normalizer.

Canonicalizes the offer universe for one run into an OfferBook: per-card
offer lists sorted by effective unit cost.

Effective unit cost = unit_price + per_unit + base / expected_basket_size.
Ties break by seller rating (descending), then marketplace, seller id and
offer id (ascending).

Dropped:
- offers for cards no demand's substitution class can use
- offers for blocked cards and from blocked sellers
- offers with nothing available
- offers priced above every ceiling that could use them, unless a manual
  demand covers the card

Offers sharing (card, seller, marketplace, price, condition) are merged
by summing their quantities.
"""

import logging
from dataclasses import dataclass, field, replace

from autobuy.config import MONEY_EPSILON
from autobuy.models.demand import Demand
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticEntry
from autobuy.models.failure import InvalidOfferError
from autobuy.models.offer import Offer
from autobuy.services.directive_resolver import ResolvedDirectives

logger = logging.getLogger(__name__)


def effective_unit_cost(offer: Offer, expected_basket_size: int) -> float:
    """Unit price plus a heuristic share of the seller's shipping."""
    share = offer.shipping.flat / max(expected_basket_size, 1)
    return round(offer.unit_price + (offer.shipping.per_unit or 0.0) + share, 6)


@dataclass
class OfferBook:
    """Normalized offers for one run, indexed by card and by seller."""

    by_card: dict[str, list[Offer]] = field(default_factory=dict)
    by_seller: dict[tuple[str, str], dict[str, list[Offer]]] = field(default_factory=dict)
    costs: dict[str, float] = field(default_factory=dict)
    rejected_best: dict[str, float] = field(default_factory=dict)
    diagnostics: list[DiagnosticEntry] = field(default_factory=list)

    def offers_for(self, card_id: str) -> list[Offer]:
        return self.by_card.get(card_id, [])

    def cost(self, offer: Offer) -> float:
        return self.costs[offer.offer_id]

    def sort_key(self, offer: Offer) -> tuple[float, float, str, str, str]:
        return (
            self.cost(offer),
            -offer.rating,
            offer.marketplace,
            offer.seller_id,
            offer.offer_id,
        )

    def seller_offers(self, seller: tuple[str, str], card_id: str) -> list[Offer]:
        """One seller's offers for a card, in effective-cost order."""
        return self.by_seller.get(seller, {}).get(card_id, [])

    def seller_rating(self, seller: tuple[str, str]) -> float:
        cards = self.by_seller.get(seller, {})
        return max((offer.rating for offers in cards.values() for offer in offers), default=0.0)

    def __len__(self) -> int:
        return sum(len(offers) for offers in self.by_card.values())


def deduplicate_offers(offers: list[Offer]) -> list[Offer]:
    """
    Merge offers that describe the same listing.

    The merged offer keeps the smallest offer id (and that record's
    shipping terms and rating) so the result does not depend on input order.

    Raises:
        InvalidOfferError: If one offer id names two different listings
    """
    groups: dict[tuple, list[Offer]] = {}
    for offer in offers:
        groups.setdefault(offer.dedupe_key, []).append(offer)

    merged: list[Offer] = []
    owners: dict[str, tuple] = {}
    for key, group in groups.items():
        for offer in group:
            owner = owners.setdefault(offer.offer_id, key)
            if owner != key:
                raise InvalidOfferError(f"offerId '{offer.offer_id}' is used by two listings")

        group.sort(key=lambda o: o.offer_id)
        first = group[0]
        if len(group) == 1:
            merged.append(first)
            continue
        total = sum(o.quantity_available for o in group)
        merged.append(replace(first, quantity_available=total))

    return merged


def _class_ceilings(
    demands: list[Demand],
    resolved: ResolvedDirectives,
) -> tuple[dict[str, float | None], set[str]]:
    """
    Loosest ceiling per card across every demand whose class includes it.

    None means some demand accepts any price. Cards covered by a manual
    demand are returned separately.
    """
    ceilings: dict[str, float | None] = {}
    manual_cards: set[str] = set()

    for demand in demands:
        members = resolved.class_of(demand.card_id)
        for card_id in members:
            if demand.is_manual:
                manual_cards.add(card_id)
            if card_id not in ceilings:
                ceilings[card_id] = demand.max_unit_price
                continue
            current = ceilings[card_id]
            if current is None or demand.max_unit_price is None:
                ceilings[card_id] = None
            else:
                ceilings[card_id] = max(current, demand.max_unit_price)

    return ceilings, manual_cards


def normalize_offers(
    offers: list[Offer],
    demands: list[Demand],
    resolved: ResolvedDirectives,
    expected_basket_size: int = 3,
) -> OfferBook:
    """
    Build the OfferBook for a run.

    Args:
        offers: Canonical offers from every source
        demands: Resolved demands (forced ones included)
        resolved: Directive context with blocks and substitution classes
        expected_basket_size: Units a basket is assumed to hold when
            amortizing flat shipping for ranking

    Returns:
        OfferBook with per-card lists in effective-cost order
    """
    ceilings, manual_cards = _class_ceilings(demands, resolved)
    book = OfferBook()
    blocked_seen: set[str] = set()
    dropped = {"irrelevant": 0, "blocked": 0, "empty": 0, "ceiling": 0}

    for offer in deduplicate_offers(offers):
        if offer.card_id not in ceilings or offer.card_id in resolved.blocked_cards:
            dropped["irrelevant"] += 1
            continue
        if resolved.is_seller_blocked(offer.seller_id):
            dropped["blocked"] += 1
            blocked_seen.add(offer.seller_id)
            continue
        if offer.quantity_available <= 0:
            dropped["empty"] += 1
            continue

        ceiling = ceilings[offer.card_id]
        over_ceiling = ceiling is not None and offer.unit_price > ceiling + MONEY_EPSILON
        if over_ceiling and offer.card_id not in manual_cards:
            dropped["ceiling"] += 1
            best = book.rejected_best.get(offer.card_id)
            if best is None or offer.unit_price < best:
                book.rejected_best[offer.card_id] = offer.unit_price
            continue

        book.by_card.setdefault(offer.card_id, []).append(offer)
        book.costs[offer.offer_id] = effective_unit_cost(offer, expected_basket_size)

    for card_id in sorted(book.by_card):
        card_offers = book.by_card[card_id]
        card_offers.sort(key=book.sort_key)
        for offer in card_offers:
            seller = book.by_seller.setdefault((offer.seller_id, offer.marketplace), {})
            seller.setdefault(card_id, []).append(offer)

    book.diagnostics = [
        DiagnosticEntry(DiagnosticCode.SELLER_BLOCKED, {"sellerId": seller_id})
        for seller_id in sorted(blocked_seen)
    ]

    logger.info(
        "offers_normalized",
        extra={
            "offers_in": len(offers),
            "offers_kept": len(book),
            "cards_with_offers": len(book.by_card),
            **{f"dropped_{reason}": count for reason, count in dropped.items()},
        },
    )

    return book

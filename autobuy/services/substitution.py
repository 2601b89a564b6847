"""
Substitution Expander.

For a demand, yields the candidate offers of every card in its
substitution class as one stream in effective-cost order. The stream is
a lazy k-way merge of the per-card lists already sorted by the offer
normalizer; nothing is materialized beyond the heads of those lists.

Classes are disjoint, so each offer appears at most once per stream.
Reserved quantity is tracked by the planner, not here.
"""

import heapq
from collections.abc import Iterator

from autobuy.models.demand import Demand
from autobuy.models.offer import Offer
from autobuy.services.directive_resolver import ResolvedDirectives
from autobuy.services.offer_normalizer import OfferBook


class SubstitutionExpander:
    """Candidate streams over an OfferBook."""

    def __init__(self, book: OfferBook, resolved: ResolvedDirectives):
        self._book = book
        self._resolved = resolved

    def cards_for(self, demand: Demand) -> tuple[str, ...]:
        """The demand's card and every card fungible with it."""
        return self._resolved.class_of(demand.card_id)

    def stream(self, demand: Demand) -> Iterator[Offer]:
        """
        Offers that can satisfy `demand`, cheapest first.

        A demand pinned to one seller only sees that seller's offers.
        """
        lists = [self._book.offers_for(card_id) for card_id in self.cards_for(demand)]
        merged = heapq.merge(*[offers for offers in lists if offers], key=self._book.sort_key)
        if demand.seller_id is None:
            return merged
        return (offer for offer in merged if offer.seller_id == demand.seller_id)

    def has_candidates(self, demand: Demand) -> bool:
        return any(self._book.offers_for(card_id) for card_id in self.cards_for(demand))

"""
Planner Core.

Greedy multi-pass basket assembly with seller consolidation:

- Pass A: forced (manual) demands, ceilings bypassed.
- Pass B: seller consolidation. Sellers covering several outstanding
  demands are ranked by score and filled until the basket crosses the
  seller's free-shipping threshold. Skipped when the total cap cannot
  cover every pending demand at its cheapest candidate.
- Pass C: gap filling. Each remaining demand walks its candidate stream
  cheapest first, reusing open baskets.
- Shipping top-up: baskets short of free shipping take more units for
  short demands or hot-list cards when that lowers their total.
- Local improvement: single units move between open baskets while the
  pair's subtotal plus shipping drops.
- Pass D: shipping and profitability finalization.
- Pass E: speculative trim of unprofitable baskets above the cap.

INVARIANTS:
- A line never takes more of an offer than quantity_available minus what
  earlier lines reserved.
- A demand is never credited more units than it asked for.
- Sum of basket totals stays within the effective total cap, except for
  forced lines allocated under RELAXED mode.
- Lines are merged per offer, so no two lines reference one offer.

Line-level failures are recorded as diagnostics; nothing here raises on
valid input. The run is deterministic: no randomness, no clock reads.
"""

import heapq
import logging
import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from autobuy.config import MONEY_EPSILON, Settings
from autobuy.models.budget import BudgetConfig, CapDimension
from autobuy.models.demand import Demand
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticLog
from autobuy.models.offer import Offer, Shipping
from autobuy.models.plan import Basket, DemandAllocation, LineItem, UnfilledDemand, money
from autobuy.models.request import CancellationToken
from autobuy.services.demand_builder import ceiling_for
from autobuy.services.directive_resolver import ResolvedDirectives
from autobuy.services.offer_normalizer import OfferBook
from autobuy.services.substitution import SubstitutionExpander

logger = logging.getLogger(__name__)

# Higher wins when several reasons apply to one demand's shortfall
REASON_PRECEDENCE: dict[DiagnosticCode, int] = {
    DiagnosticCode.NO_OFFERS: 0,
    DiagnosticCode.PRICE_CEILING_EXCEEDED: 1,
    DiagnosticCode.CAP_HIT: 2,
    DiagnosticCode.SPECULATIVE_BUDGET_EXHAUSTED: 3,
    DiagnosticCode.CANCELLED: 4,
}

SellerKey = tuple[str, str]


@dataclass(frozen=True)
class PlannerWeights:
    """Pass B scoring weights. All positive, alpha above both beta and gamma."""

    alpha: float = 10.0
    beta: float = 1.0
    gamma: float = 2.0
    min_consolidation_demands: int = 2

    def __post_init__(self) -> None:
        if not min(self.alpha, self.beta, self.gamma) > 0:
            raise ValueError(
                f"score weights must be positive, got {self.alpha}, {self.beta}, {self.gamma}"
            )
        if not (self.alpha > self.beta and self.alpha > self.gamma):
            raise ValueError(
                f"score weights must satisfy alpha > beta and alpha > gamma, "
                f"got {self.alpha}, {self.beta}, {self.gamma}"
            )
        if self.min_consolidation_demands < 1:
            raise ValueError("min_consolidation_demands must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlannerWeights":
        return cls(
            alpha=settings.score_alpha,
            beta=settings.score_beta,
            gamma=settings.score_gamma,
            min_consolidation_demands=settings.min_consolidation_demands,
        )


@dataclass(frozen=True)
class CapBreach:
    """One cap a prospective line would cross."""

    dimension: CapDimension
    cap: float
    key: str | None = None


@dataclass
class OpenLine:
    """A line under construction. Keyed by offer within its basket."""

    offer: Offer
    quantity: int = 0
    allocations: dict[str, int] = field(default_factory=dict)
    forced: bool = False

    @property
    def spend(self) -> float:
        return self.offer.unit_price * self.quantity


@dataclass
class OpenBasket:
    """A basket under construction. Shipping terms come from its first offer."""

    seller_id: str
    marketplace: str
    shipping: Shipping
    lines: dict[str, OpenLine] = field(default_factory=dict)

    @property
    def key(self) -> SellerKey:
        return (self.seller_id, self.marketplace)

    @property
    def subtotal(self) -> float:
        return sum(line.spend for line in self.lines.values())

    @property
    def units(self) -> int:
        return sum(line.quantity for line in self.lines.values())

    @property
    def total(self) -> float:
        return self.total_with()

    @property
    def has_forced(self) -> bool:
        return any(line.forced for line in self.lines.values())

    @property
    def latched(self) -> bool:
        free_at = self.shipping.free_at
        return free_at is not None and self.units > 0 and self.subtotal >= free_at - MONEY_EPSILON

    def total_with(self, extra_spend: float = 0.0, extra_units: int = 0) -> float:
        subtotal = self.subtotal + extra_spend
        return subtotal + self.shipping.cost_for(subtotal, self.units + extra_units)


@dataclass
class PlannerResult:
    baskets: list[Basket]
    unfilled: list[UnfilledDemand]
    diagnostics: DiagnosticLog
    cancelled: bool = False


@dataclass
class PlannerContext:
    """
    Per-run mutable state.

    Holds the reservation map, open baskets and running totals. Created
    fresh for every run and never shared.

    Demands named in `optional` (hot-list top-ups) are only used to fill
    baskets toward free shipping. They are never planned on their own
    and never reported as unfilled.
    """

    demands: dict[str, Demand]
    book: OfferBook
    expander: SubstitutionExpander
    resolved: ResolvedDirectives
    budget: BudgetConfig
    weights: PlannerWeights = field(default_factory=PlannerWeights)
    reference_prices: dict[str, float] = field(default_factory=dict)
    card_ceilings: dict[str, float] = field(default_factory=dict)
    hot_cards: frozenset[str] = field(default_factory=frozenset)
    optional: frozenset[str] = field(default_factory=frozenset)
    improvement_rounds: int = 10
    cancel: CancellationToken | None = None

    reserved: dict[str, int] = field(default_factory=dict)
    baskets: dict[SellerKey, OpenBasket] = field(default_factory=dict)
    remaining: dict[str, int] = field(default_factory=dict)
    total_spend: float = 0.0
    seller_spend: dict[str, float] = field(default_factory=dict)
    card_spend: dict[str, float] = field(default_factory=dict)
    partition_spend: dict[str, float] = field(default_factory=dict)
    floor_costs: dict[str, float] = field(default_factory=dict)
    floor_total: float = 0.0
    budget_bound: bool = False
    diagnostics: DiagnosticLog = field(default_factory=DiagnosticLog)
    reasons: dict[str, DiagnosticCode] = field(default_factory=dict)
    rejected_prices: dict[str, float] = field(default_factory=dict)
    cancelled: bool = False

    def __post_init__(self) -> None:
        if not self.remaining:
            self.remaining = {demand_id: d.quantity for demand_id, d in self.demands.items()}

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def available(self, offer: Offer) -> int:
        return offer.quantity_available - self.reserved.get(offer.offer_id, 0)

    def outstanding(self, demand: Demand) -> int:
        return self.remaining.get(demand.demand_id, 0)

    def within_ceiling(self, demand: Demand, offer: Offer) -> bool:
        ceiling = demand.max_unit_price
        return ceiling is None or offer.unit_price <= ceiling + MONEY_EPSILON

    def usable(self, demand: Demand, offer: Offer) -> bool:
        return self.available(offer) > 0 and self.within_ceiling(demand, offer)

    def retail_price(self, card_id: str) -> float | None:
        return self.reference_prices.get(card_id)

    def is_optional(self, demand: Demand) -> bool:
        return demand.demand_id in self.optional

    def pending(self) -> list[Demand]:
        """Regular demands still short, in planning order."""
        return sorted(
            (
                d
                for d in self.demands.values()
                if not d.is_manual and not self.is_optional(d) and self.outstanding(d) > 0
            ),
            key=self.gap_order,
        )

    def gap_order(self, demand: Demand) -> tuple[int, int, float, float, str]:
        """
        Planning order: priority, hot list, reference price desc, id.

        Under a binding total cap, demands sharing a priority and hot-list
        tier go cheapest first so the most units fit.
        """
        cheapest = 0.0
        if self.budget_bound:
            cheapest = self.floor_costs.get(demand.demand_id, math.inf)
        return (
            demand.rank,
            0 if demand.card_id in self.hot_cards else 1,
            cheapest,
            -(self.retail_price(demand.card_id) or 0.0),
            demand.demand_id,
        )

    def check_cancelled(self, stage: str) -> bool:
        if self.cancelled:
            return True
        if self.cancel is not None and self.cancel.cancelled:
            self.cancelled = True
            self.diagnostics.record(DiagnosticCode.CANCELLED, stage=stage)
            logger.info("plan_cancelled", extra={"stage": stage, "baskets": len(self.baskets)})
        return self.cancelled

    # -------------------------------------------------------------------------
    # Reasons
    # -------------------------------------------------------------------------

    def note(self, demand: Demand, code: DiagnosticCode) -> None:
        current = self.reasons.get(demand.demand_id)
        if current is None or REASON_PRECEDENCE[code] > REASON_PRECEDENCE[current]:
            self.reasons[demand.demand_id] = code

    def reject_price(self, demand: Demand, price: float) -> None:
        best = self.rejected_prices.get(demand.demand_id)
        if best is None or price < best:
            self.rejected_prices[demand.demand_id] = price
        self.note(demand, DiagnosticCode.PRICE_CEILING_EXCEEDED)

    # -------------------------------------------------------------------------
    # Caps
    # -------------------------------------------------------------------------

    def total_delta(self, offer: Offer, quantity: int) -> float:
        """Change in basket total from adding `quantity` units of `offer`."""
        basket = self.baskets.get((offer.seller_id, offer.marketplace))
        if basket is None:
            basket = OpenBasket(offer.seller_id, offer.marketplace, offer.shipping)
        return basket.total_with(offer.unit_price * quantity, quantity) - basket.total

    def breaches(self, demand: Demand, offer: Offer, quantity: int) -> list[CapBreach]:
        """Caps crossed by adding `quantity` units of `offer` for `demand`."""
        spend = offer.unit_price * quantity
        delta = self.total_delta(offer, quantity)
        budget = self.budget
        found: list[CapBreach] = []

        if self.total_spend + delta > budget.effective_total_spend + MONEY_EPSILON:
            found.append(CapBreach(CapDimension.TOTAL, budget.effective_total_spend))
        if budget.max_per_seller is not None:
            seller_total = self.seller_spend.get(offer.seller_id, 0.0) + delta
            if seller_total > budget.max_per_seller + MONEY_EPSILON:
                found.append(
                    CapBreach(CapDimension.PER_SELLER, budget.max_per_seller, offer.seller_id)
                )
        if budget.max_per_card is not None:
            card_total = self.card_spend.get(offer.card_id, 0.0) + spend
            if card_total > budget.max_per_card + MONEY_EPSILON:
                found.append(CapBreach(CapDimension.PER_CARD, budget.max_per_card, offer.card_id))
        for tag in sorted(demand.source_tags):
            cap = self.resolved.partitions.get(tag)
            if cap is None:
                continue
            if self.partition_spend.get(tag, 0.0) + spend > cap + MONEY_EPSILON:
                found.append(CapBreach(CapDimension.PARTITION, cap, tag))

        return found

    def is_hard(self, breach: CapBreach) -> bool:
        return self.budget.is_strict or breach.dimension == CapDimension.TOTAL

    def has_headroom(self, demand: Demand, offer: Offer) -> bool:
        """
        Whether taking `offer` for `demand` still leaves room under the
        total cap for every other pending unit at its cheapest candidate.

        The cheapest candidate itself always has headroom.
        """
        floor = self.floor_costs.get(demand.demand_id)
        if floor is None or self.book.cost(offer) <= floor + MONEY_EPSILON:
            return True
        quantity = min(self.outstanding(demand), self.available(offer))
        rest = self.floor_total - floor * quantity
        projected = self.total_spend + self.total_delta(offer, quantity) + rest
        return projected <= self.budget.effective_total_spend + MONEY_EPSILON

    def record_cap_hit(self, breach: CapBreach, enforced: bool) -> None:
        fields: dict[str, object] = {
            "dimension": breach.dimension.value,
            "cap": money(breach.cap),
            "enforced": enforced,
        }
        if breach.key is not None:
            fields["key"] = breach.key
        self.diagnostics.record(DiagnosticCode.CAP_HIT, **fields)

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def allocate(self, demand: Demand, offer: Offer, forced: bool = False) -> int:
        """
        Add as many units of `offer` to `demand` as caps allow.

        Returns:
            Units allocated (0 when nothing fits)
        """
        wanted = min(self.outstanding(demand), self.available(offer))
        if wanted <= 0:
            return 0

        if forced and not self.budget.is_strict:
            over = self.breaches(demand, offer, wanted)
            for breach in over:
                self._record_forced_over(offer, wanted, breach.dimension.value)
            self.commit(demand, offer, wanted, forced)
            return wanted

        quantity = wanted
        blocking: list[CapBreach] = []
        while quantity > 0:
            hard = [b for b in self.breaches(demand, offer, quantity) if self.is_hard(b)]
            if not hard:
                break
            blocking = hard
            quantity -= 1

        if blocking:
            if forced:
                for breach in blocking:
                    self._record_forced_over(offer, wanted - quantity, breach.dimension.value)
            else:
                for breach in blocking:
                    self.record_cap_hit(breach, enforced=True)
            self.note(demand, DiagnosticCode.CAP_HIT)

        if quantity <= 0:
            return 0

        for breach in self.breaches(demand, offer, quantity):
            self.record_cap_hit(breach, enforced=False)

        self.commit(demand, offer, quantity, forced)
        return quantity

    def _record_forced_over(self, offer: Offer, quantity: int, dimension: str) -> None:
        self.diagnostics.record(
            DiagnosticCode.FORCED_OVER_BUDGET,
            cardId=offer.card_id,
            amount=money(offer.unit_price * quantity),
            dimension=dimension,
        )

    def _rebase(self, basket: OpenBasket, before: float) -> None:
        change = basket.total - before
        self.total_spend += change
        self.seller_spend[basket.seller_id] = self.seller_spend.get(basket.seller_id, 0.0) + change

    def _track_spend(self, demand: Demand, offer: Offer, spend: float) -> None:
        self.card_spend[offer.card_id] = self.card_spend.get(offer.card_id, 0.0) + spend
        for tag in demand.source_tags:
            if tag in self.resolved.partitions:
                self.partition_spend[tag] = self.partition_spend.get(tag, 0.0) + spend

    def commit(self, demand: Demand, offer: Offer, quantity: int, forced: bool = False) -> None:
        """Record `quantity` units of `offer` for `demand`. No cap checks."""
        key = (offer.seller_id, offer.marketplace)
        basket = self.baskets.get(key)
        if basket is None:
            basket = OpenBasket(offer.seller_id, offer.marketplace, offer.shipping)
            self.baskets[key] = basket

        before = basket.total
        line = basket.lines.get(offer.offer_id)
        if line is None:
            line = OpenLine(offer=offer)
            basket.lines[offer.offer_id] = line
        line.quantity += quantity
        line.allocations[demand.demand_id] = line.allocations.get(demand.demand_id, 0) + quantity
        line.forced = line.forced or forced

        self.reserved[offer.offer_id] = self.reserved.get(offer.offer_id, 0) + quantity
        self._rebase(basket, before)
        self._track_spend(demand, offer, offer.unit_price * quantity)
        self.remaining[demand.demand_id] -= quantity

    def uncommit(self, demand: Demand, offer: Offer, quantity: int) -> None:
        """Take back `quantity` units `commit` gave `demand` from `offer`."""
        basket = self.baskets[(offer.seller_id, offer.marketplace)]
        before = basket.total
        line = basket.lines[offer.offer_id]
        line.quantity -= quantity
        left = line.allocations[demand.demand_id] - quantity
        if left > 0:
            line.allocations[demand.demand_id] = left
        else:
            del line.allocations[demand.demand_id]
        if line.quantity <= 0:
            del basket.lines[offer.offer_id]

        self.reserved[offer.offer_id] -= quantity
        self._rebase(basket, before)
        self._track_spend(demand, offer, -offer.unit_price * quantity)
        self.remaining[demand.demand_id] += quantity
        if not basket.lines:
            del self.baskets[basket.key]

    def release(self, basket: OpenBasket, reason: DiagnosticCode) -> None:
        """Drop a basket and return its units to the demands it served."""
        self.total_spend -= basket.total
        self.seller_spend[basket.seller_id] -= basket.total
        for line in basket.lines.values():
            offer = line.offer
            self.reserved[offer.offer_id] -= line.quantity
            for demand_id, quantity in line.allocations.items():
                demand = self.demands[demand_id]
                self.remaining[demand_id] += quantity
                self._track_spend(demand, offer, -offer.unit_price * quantity)
                self.note(demand, reason)
        del self.baskets[basket.key]

    def fill(self, demand: Demand, offers: Iterable[Offer], forced: bool = False) -> None:
        """Walk candidate offers cheapest first until the demand is covered."""
        for offer in offers:
            if self.outstanding(demand) <= 0:
                return
            if self.available(offer) <= 0:
                continue
            if not forced and not self.within_ceiling(demand, offer):
                self.reject_price(demand, offer.unit_price)
                continue
            allocated = self.allocate(demand, offer, forced=forced)
            if allocated and forced:
                ceiling = self.card_ceilings.get(offer.card_id)
                if ceiling is not None and offer.unit_price > ceiling + MONEY_EPSILON:
                    self._record_forced_over(offer, allocated, "ceiling")


def build_card_ceilings(
    demands: Iterable[Demand],
    reference_prices: dict[str, float],
    price_threshold_percent: float,
) -> dict[str, float]:
    """Lowest regular-demand ceiling per card, else the reference-derived one."""
    ceilings: dict[str, float] = {}
    for demand in demands:
        if demand.is_manual or demand.max_unit_price is None:
            continue
        current = ceilings.get(demand.card_id)
        if current is None or demand.max_unit_price < current:
            ceilings[demand.card_id] = demand.max_unit_price
    for card_id in reference_prices:
        if card_id not in ceilings:
            derived = ceiling_for(card_id, reference_prices, price_threshold_percent)
            if derived is not None:
                ceilings[card_id] = derived
    return ceilings


# =============================================================================
# PASSES
# =============================================================================


def _log_pass(ctx: PlannerContext, name: str) -> None:
    logger.info(
        "pass_completed",
        extra={
            "pass": name,
            "baskets": len(ctx.baskets),
            "filled_units": sum(b.units for b in ctx.baskets.values()),
            "total_spend": money(ctx.total_spend),
        },
    )


def run_pass_a(ctx: PlannerContext) -> None:
    """Forced inclusions. Ceilings bypassed, caps per budget mode."""
    forced = sorted((d for d in ctx.demands.values() if d.is_manual), key=lambda d: d.demand_id)
    for demand in forced:
        if not ctx.expander.has_candidates(demand):
            continue
        ctx.fill(demand, ctx.expander.stream(demand), forced=True)
    _log_pass(ctx, "A")


def assess_budget(ctx: PlannerContext, pending: list[Demand]) -> None:
    """
    Price each pending demand at its cheapest usable candidate.

    The run is budget-bound when those units, on top of what is already
    spent, do not fit under the effective total cap.
    """
    costs: dict[str, float] = {}
    for demand in pending:
        for offer in ctx.expander.stream(demand):
            if ctx.usable(demand, offer):
                costs[demand.demand_id] = ctx.book.cost(offer)
                break

    ctx.floor_costs = costs
    ctx.floor_total = sum(
        costs[d.demand_id] * ctx.outstanding(d) for d in pending if d.demand_id in costs
    )
    cap = ctx.budget.effective_total_spend
    ctx.budget_bound = ctx.total_spend + ctx.floor_total > cap + MONEY_EPSILON
    if ctx.budget_bound:
        logger.info(
            "budget_bound",
            extra={
                "floor": money(ctx.floor_total),
                "spent": money(ctx.total_spend),
                "cap": money(cap),
            },
        )


@dataclass
class SellerCandidate:
    """A seller's potential basket as scored for consolidation."""

    seller_id: str
    marketplace: str
    coverable: int
    score: float
    hot_coverage: int
    rating: float

    @property
    def key(self) -> SellerKey:
        return (self.seller_id, self.marketplace)

    @property
    def sort_key(self) -> tuple[float, int, float, str, str]:
        return (-self.score, -self.hot_coverage, -self.rating, self.seller_id, self.marketplace)


@dataclass
class _Tally:
    terms: Shipping
    coverable: int = 0
    hot: int = 0
    margin: float = 0.0
    subtotal: float = 0.0
    units: int = 0


def best_offer_per_seller(ctx: PlannerContext, demand: Demand) -> dict[SellerKey, Offer]:
    """Each seller's cheapest usable offer for `demand`."""
    best: dict[SellerKey, Offer] = {}
    for card_id in ctx.expander.cards_for(demand):
        for offer in ctx.book.offers_for(card_id):
            if not ctx.usable(demand, offer):
                continue
            key = (offer.seller_id, offer.marketplace)
            current = best.get(key)
            if current is None or ctx.book.sort_key(offer) < ctx.book.sort_key(current):
                best[key] = offer
    return best


def score_sellers(ctx: PlannerContext, outstanding: list[Demand]) -> list[SellerCandidate]:
    """
    Rank sellers for consolidation.

    score = coverable * alpha + margin * beta - shipping estimate * gamma,
    where margin sums (retail - price) over each coverable demand's
    cheapest line at this seller.
    """
    tallies: dict[SellerKey, _Tally] = {}
    for demand in outstanding:
        for key, best in best_offer_per_seller(ctx, demand).items():
            tally = tallies.get(key)
            if tally is None:
                tally = tallies[key] = _Tally(terms=best.shipping)
            quantity = min(ctx.outstanding(demand), ctx.available(best))
            tally.coverable += 1
            if demand.card_id in ctx.hot_cards:
                tally.hot += 1
            retail = ctx.retail_price(best.card_id) or ctx.retail_price(demand.card_id)
            if retail is not None:
                tally.margin += (retail - best.unit_price) * quantity
            tally.subtotal += best.unit_price * quantity
            tally.units += quantity

    weights = ctx.weights
    candidates: list[SellerCandidate] = []
    for (seller_id, marketplace), tally in tallies.items():
        if tally.coverable < weights.min_consolidation_demands:
            continue
        open_basket = ctx.baskets.get((seller_id, marketplace))
        terms = open_basket.shipping if open_basket else tally.terms
        shipping_estimate = terms.cost_for(tally.subtotal, tally.units)
        score = (
            tally.coverable * weights.alpha
            + tally.margin * weights.beta
            - shipping_estimate * weights.gamma
        )
        candidates.append(
            SellerCandidate(
                seller_id=seller_id,
                marketplace=marketplace,
                coverable=tally.coverable,
                score=round(score, 6),
                hot_coverage=tally.hot,
                rating=ctx.book.seller_rating((seller_id, marketplace)),
            )
        )

    candidates.sort(key=lambda c: c.sort_key)
    return candidates


def seller_stream(ctx: PlannerContext, seller: SellerKey, demand: Demand) -> Iterator[Offer]:
    """One seller's offers for a demand's class, cheapest first."""
    lists = [ctx.book.seller_offers(seller, card_id) for card_id in ctx.expander.cards_for(demand)]
    return heapq.merge(*[offers for offers in lists if offers], key=ctx.book.sort_key)


def cheaper_substitute_available(ctx: PlannerContext, demand: Demand, offer: Offer) -> bool:
    """True while another card in the class has a strictly cheaper usable offer."""
    cost = ctx.book.cost(offer)
    for card_id in ctx.expander.cards_for(demand):
        if card_id == offer.card_id:
            continue
        for other in ctx.book.offers_for(card_id):
            if ctx.book.cost(other) >= cost:
                break
            if ctx.usable(demand, other):
                return True
    return False


def run_pass_b(ctx: PlannerContext) -> None:
    """Seller consolidation, latched at the free-shipping threshold."""
    outstanding = ctx.pending()
    assess_budget(ctx, outstanding)
    if not outstanding or ctx.budget_bound:
        _log_pass(ctx, "B")
        return

    for candidate in score_sellers(ctx, outstanding):
        if ctx.check_cancelled("B"):
            return
        key = candidate.key

        for demand in outstanding:
            basket = ctx.baskets.get(key)
            if basket is not None and basket.latched:
                break
            if ctx.outstanding(demand) <= 0:
                continue
            for offer in seller_stream(ctx, key, demand):
                if not ctx.usable(demand, offer):
                    continue
                if cheaper_substitute_available(ctx, demand, offer):
                    continue
                if not ctx.has_headroom(demand, offer):
                    continue
                allocated = ctx.allocate(demand, offer)
                ctx.floor_total -= ctx.floor_costs.get(demand.demand_id, 0.0) * allocated
                basket = ctx.baskets.get(key)
                if ctx.outstanding(demand) <= 0 or (basket is not None and basket.latched):
                    break

    _log_pass(ctx, "B")


def run_pass_c(ctx: PlannerContext) -> None:
    """Gap filling along each demand's candidate stream."""
    for demand in ctx.pending():
        ctx.fill(demand, ctx.expander.stream(demand))
    _log_pass(ctx, "C")


def _topup_candidates(ctx: PlannerContext) -> dict[str, list[Demand]]:
    """Short demands by card they can take, regular demands before hot-list ones."""
    by_card: dict[str, list[Demand]] = {}
    for demand in ctx.pending():
        for card_id in ctx.expander.cards_for(demand):
            by_card.setdefault(card_id, []).append(demand)
    for demand_id in sorted(ctx.optional):
        demand = ctx.demands[demand_id]
        if ctx.outstanding(demand) > 0:
            by_card.setdefault(demand.card_id, []).append(demand)
    return by_card


def _top_up(ctx: PlannerContext, basket: OpenBasket, by_card: dict[str, list[Demand]]) -> bool:
    ranked: list[tuple[tuple[int, float, str, str, str], Demand, Offer]] = []
    for card_id, demands in by_card.items():
        for offer in ctx.book.seller_offers(basket.key, card_id):
            for demand in demands:
                tier = 1 if ctx.is_optional(demand) else 0
                order = (tier, offer.unit_price, card_id, offer.offer_id, demand.demand_id)
                ranked.append((order, demand, offer))
    ranked.sort(key=lambda item: item[0])

    before = basket.total
    added: list[tuple[Demand, Offer]] = []
    for _, demand, offer in ranked:
        while not basket.latched and ctx.outstanding(demand) > 0 and ctx.usable(demand, offer):
            if ctx.breaches(demand, offer, 1):
                break
            ctx.commit(demand, offer, 1)
            added.append((demand, offer))
        if basket.latched:
            break

    if basket.latched and basket.total < before - MONEY_EPSILON:
        logger.debug(
            "shipping_topped_up",
            extra={"basket": f"{basket.seller_id}@{basket.marketplace}", "units": len(added)},
        )
        return True
    for demand, offer in reversed(added):
        ctx.uncommit(demand, offer, 1)
    return False


def run_shipping_topup(ctx: PlannerContext) -> None:
    """
    Top baskets up to their free-shipping threshold.

    Candidates are the seller's units for regular demands still short,
    then hot-list units, cheapest first. The additions stay only when the
    basket then ships free and its total drops.
    """
    by_card = _topup_candidates(ctx)
    topped = 0
    if by_card:
        for key in sorted(ctx.baskets):
            basket = ctx.baskets[key]
            if basket.shipping.free_at is None or basket.latched:
                continue
            if _top_up(ctx, basket, by_card):
                topped += 1
    logger.info("shipping_topup_completed", extra={"baskets_topped": topped})


def _move_gain(source: OpenBasket, source_offer: Offer, target: OpenBasket, offer: Offer) -> float:
    if source.units == 1:
        source_after = 0.0
    else:
        source_after = source.total_with(-source_offer.unit_price, -1)
    target_after = target.total_with(offer.unit_price, 1)
    return source.total + target.total - source_after - target_after


def _better_home(
    ctx: PlannerContext, source: OpenBasket, line: OpenLine, demand: Demand
) -> Offer | None:
    """The offer in another open basket that saves most by taking one unit."""
    cards = (demand.card_id,) if ctx.is_optional(demand) else ctx.expander.cards_for(demand)
    source_cost = ctx.book.cost(line.offer)
    best: Offer | None = None
    best_gain = MONEY_EPSILON
    for card_id in cards:
        for offer in ctx.book.offers_for(card_id):
            key = (offer.seller_id, offer.marketplace)
            target = ctx.baskets.get(key)
            if target is None or key == source.key or not ctx.usable(demand, offer):
                continue
            if demand.seller_id is not None and offer.seller_id != demand.seller_id:
                continue
            if card_id != line.offer.card_id and ctx.book.cost(offer) > source_cost:
                continue
            gain = _move_gain(source, line.offer, target, offer)
            if gain > best_gain and not ctx.breaches(demand, offer, 1):
                best, best_gain = offer, gain
    return best


def _find_move(ctx: PlannerContext) -> tuple[Demand, Offer, Offer] | None:
    for key in sorted(ctx.baskets):
        source = ctx.baskets[key]
        for line in sorted(source.lines.values(), key=lambda ln: ln.offer.offer_id):
            if line.forced:
                continue
            for demand_id in sorted(line.allocations):
                demand = ctx.demands[demand_id]
                target = _better_home(ctx, source, line, demand)
                if target is not None:
                    return demand, line.offer, target
    return None


def run_local_improvement(ctx: PlannerContext) -> int:
    """
    Bounded hill climbing over the open baskets.

    Each step moves one unit to another open basket when the two baskets'
    combined subtotal plus shipping drops, taking the largest saving for
    the first line (in seller and offer order) that has one. Forced lines
    stay put. A unit only switches to another card of its class when that
    card is no dearer. Stops after `improvement_rounds` moves or when no
    move helps.

    Returns:
        Units moved
    """
    moved = 0
    while moved < ctx.improvement_rounds:
        move = _find_move(ctx)
        if move is None:
            break
        demand, source_offer, offer = move
        ctx.uncommit(demand, source_offer, 1)
        ctx.commit(demand, offer, 1)
        moved += 1
    logger.info("local_improvement_completed", extra={"moves": moved})
    return moved


def finalize_baskets(ctx: PlannerContext) -> list[Basket]:
    """
    Pass D: final shipping, retail totals and profitability.

    Retail value of a line uses the reference price of the card bought,
    falling back to the demanded card's reference for substitutes.
    """
    baskets: list[Basket] = []
    max_ratio = ctx.budget.max_cost_ratio

    for key in sorted(ctx.baskets):
        open_basket = ctx.baskets[key]
        if open_basket.units == 0:
            continue
        items: list[LineItem] = []
        retail_total = 0.0

        for line in sorted(
            open_basket.lines.values(), key=lambda ln: (ln.offer.card_id, ln.offer.offer_id)
        ):
            allocations = tuple(
                DemandAllocation(demand_id, ctx.demands[demand_id].card_id, quantity)
                for demand_id, quantity in sorted(line.allocations.items())
            )
            items.append(
                LineItem(
                    card_id=line.offer.card_id,
                    offer_ref=line.offer.offer_id,
                    unit_price=line.offer.unit_price,
                    quantity=line.quantity,
                    satisfies_demands=allocations,
                    forced=line.forced,
                )
            )
            reference = ctx.retail_price(line.offer.card_id)
            if reference is not None:
                retail_total += reference * line.quantity
                continue
            for allocation in allocations:
                fallback = ctx.retail_price(allocation.card_id)
                if fallback is not None:
                    retail_total += fallback * allocation.quantity

        subtotal = open_basket.subtotal
        shipping = open_basket.shipping.cost_for(subtotal, open_basket.units)
        total = subtotal + shipping
        cost_ratio = total / retail_total if retail_total > 0 else None
        baskets.append(
            Basket(
                seller_id=open_basket.seller_id,
                marketplace=open_basket.marketplace,
                items=tuple(items),
                subtotal=subtotal,
                shipping=shipping,
                total=total,
                retail_total=retail_total,
                cost_ratio=cost_ratio,
                is_profitable=cost_ratio is not None and cost_ratio <= max_ratio + MONEY_EPSILON,
            )
        )

    _log_pass(ctx, "D")
    return baskets


def speculative_spend(baskets: Iterable[Basket]) -> float:
    return sum(basket.total for basket in baskets if not basket.is_profitable)


def run_pass_e(ctx: PlannerContext, baskets: list[Basket]) -> bool:
    """
    Speculative trim.

    Drops unprofitable baskets, worst cost ratio first (undefined ratio
    counts as worst), until speculative spend fits the cap. Baskets
    holding forced lines are kept. The cap hit is recorded as enforced
    unless forced baskets alone keep spend above the cap.

    Returns:
        True when any basket was dropped
    """
    cap = ctx.budget.max_speculative_spend
    if cap is None:
        _log_pass(ctx, "E")
        return False

    spend = speculative_spend(baskets)
    if spend <= cap + MONEY_EPSILON:
        _log_pass(ctx, "E")
        return False

    victims = sorted(
        (
            b
            for b in baskets
            if not b.is_profitable and not ctx.baskets[(b.seller_id, b.marketplace)].has_forced
        ),
        key=lambda b: (
            b.cost_ratio is not None,
            -(b.cost_ratio or 0.0),
            -b.total,
            b.seller_id,
            b.marketplace,
        ),
    )
    dropped = False
    for basket in victims:
        if spend <= cap + MONEY_EPSILON:
            break
        ctx.diagnostics.record(
            DiagnosticCode.SPECULATIVE_BUDGET_EXHAUSTED,
            basketRef=basket.ref,
            total=money(basket.total),
        )
        ctx.release(
            ctx.baskets[(basket.seller_id, basket.marketplace)],
            DiagnosticCode.SPECULATIVE_BUDGET_EXHAUSTED,
        )
        spend -= basket.total
        dropped = True

    ctx.record_cap_hit(
        CapBreach(CapDimension.SPECULATIVE, cap), enforced=spend <= cap + MONEY_EPSILON
    )
    _log_pass(ctx, "E")
    return dropped


def collect_unfilled(ctx: PlannerContext) -> list[UnfilledDemand]:
    """
    One entry per demand with remaining quantity, with its reason.

    Shortfalls with no recorded cause are PriceCeilingExceeded when some
    offer was priced out, else NoOffers. Hot-list top-ups are left out.
    """
    unfilled: list[UnfilledDemand] = []
    for demand_id in sorted(ctx.demands):
        demand = ctx.demands[demand_id]
        remaining = ctx.outstanding(demand)
        if remaining <= 0 or ctx.is_optional(demand):
            continue

        if ctx.cancelled:
            reason = DiagnosticCode.CANCELLED
        else:
            reason = ctx.reasons.get(demand_id)
            best = _best_rejected_price(ctx, demand)
            if reason is None:
                reason = (
                    DiagnosticCode.PRICE_CEILING_EXCEEDED
                    if best is not None and not demand.is_manual
                    else DiagnosticCode.NO_OFFERS
                )
            if reason == DiagnosticCode.PRICE_CEILING_EXCEEDED and best is not None:
                ctx.diagnostics.record(
                    DiagnosticCode.PRICE_CEILING_EXCEEDED,
                    cardId=demand.card_id,
                    bestPrice=money(best),
                    ceiling=money(demand.max_unit_price or 0.0),
                )
            elif reason == DiagnosticCode.NO_OFFERS:
                ctx.diagnostics.record(DiagnosticCode.NO_OFFERS, cardId=demand.card_id)

        unfilled.append(UnfilledDemand(demand.card_id, remaining, reason.value))
    return unfilled


def _best_rejected_price(ctx: PlannerContext, demand: Demand) -> float | None:
    prices = [
        ctx.book.rejected_best[card_id]
        for card_id in ctx.expander.cards_for(demand)
        if card_id in ctx.book.rejected_best
    ]
    skipped = ctx.rejected_prices.get(demand.demand_id)
    if skipped is not None:
        prices.append(skipped)
    return min(prices) if prices else None


def plan_baskets(ctx: PlannerContext) -> PlannerResult:
    """
    Run passes A to E over a prepared context.

    Cancellation is checked before every pass and between sellers in
    Pass B. A cancelled run still finalizes the baskets built so far.
    """
    stages = (
        ("A", run_pass_a),
        ("B", run_pass_b),
        ("C", run_pass_c),
        ("shipping", run_shipping_topup),
        ("improve", run_local_improvement),
    )
    for stage, run in stages:
        if ctx.check_cancelled(stage):
            break
        run(ctx)

    baskets = finalize_baskets(ctx)
    if not ctx.check_cancelled("E") and run_pass_e(ctx, baskets):
        baskets = finalize_baskets(ctx)

    return PlannerResult(
        baskets=baskets,
        unfilled=collect_unfilled(ctx),
        diagnostics=ctx.diagnostics,
        cancelled=ctx.cancelled,
    )

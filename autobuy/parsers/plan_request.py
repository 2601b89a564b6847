"""
PlanRequest parser.

Validates the JSON input envelope (camelCase keys) with pydantic and maps
it onto domain records. Each section is validated on its own so a bad
record surfaces as the matching structural error:

    demands / demandSources -> InvalidDemandError
    offers                  -> InvalidOfferError
    directives              -> InvalidDirectiveError
    budget                  -> InconsistentBudgetError
    anything else           -> InvalidRequestError
"""

import json
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    FiniteFloat,
    StrictInt,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from autobuy.models.budget import BudgetConfig, BudgetMode
from autobuy.models.demand import Demand, DemandPriority
from autobuy.models.directive import (
    BlockCard,
    BlockSeller,
    BudgetPartition,
    Directive,
    ForceInclude,
    SubstitutionGroup,
)
from autobuy.models.failure import (
    InconsistentBudgetError,
    InvalidDemandError,
    InvalidDirectiveError,
    InvalidOfferError,
    InvalidRequestError,
)
from autobuy.models.inventory import InventorySnapshot
from autobuy.models.offer import Offer, Shipping
from autobuy.models.request import CancellationToken, PlanRequest
from autobuy.models.sources import Deck, DeckStatus, DemandSources, InventoryRow

REQUEST_KEYS = frozenset(
    {
        "demands",
        "directives",
        "offers",
        "hotList",
        "referencePrices",
        "referencePriceAgeHours",
        "inventory",
        "budget",
        "demandSources",
        "includeCardKingdomFallback",
    }
)


class _InputModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        allow_inf_nan=False,
    )


# =============================================================================
# SECTION MODELS
# =============================================================================


class DemandInput(_InputModel):
    card_id: str = Field(min_length=1)
    quantity: StrictInt
    max_unit_price: float | None = None
    priority: DemandPriority = DemandPriority.DECK_ACTIVE
    source_tags: list[str] = Field(default_factory=list)

    def to_domain(self) -> Demand:
        return Demand(
            card_id=self.card_id,
            quantity=self.quantity,
            max_unit_price=self.max_unit_price,
            priority=self.priority,
            source_tags=frozenset(self.source_tags),
        )


class ShippingInput(_InputModel):
    base: float | None = None
    per_unit: float | None = None
    free_at: float | None = None

    def to_domain(self) -> Shipping:
        return Shipping(base=self.base, per_unit=self.per_unit, free_at=self.free_at)


class OfferInput(_InputModel):
    card_id: str = Field(min_length=1)
    seller_id: str = Field(min_length=1)
    marketplace: str = Field(min_length=1)
    unit_price: float
    quantity_available: StrictInt
    shipping: ShippingInput
    condition: str = "NM"
    seller_rating: float | None = Field(default=None, ge=0, le=1)
    expires_at: str | None = None
    offer_id: str | None = None

    def to_domain(self) -> Offer:
        return Offer(
            card_id=self.card_id,
            seller_id=self.seller_id,
            marketplace=self.marketplace,
            unit_price=self.unit_price,
            quantity_available=self.quantity_available,
            shipping=self.shipping.to_domain(),
            condition=self.condition,
            seller_rating=self.seller_rating,
            expires_at=self.expires_at,
            offer_id=self.offer_id or "",
        )


class ForceIncludeInput(_InputModel):
    type: Literal["ForceInclude"]
    card_id: str
    quantity: StrictInt = 1
    seller_id: str | None = None
    reason: str = "operator"

    def to_domain(self) -> ForceInclude:
        return ForceInclude(self.card_id, self.quantity, self.seller_id, self.reason)


class BlockSellerInput(_InputModel):
    type: Literal["BlockSeller"]
    seller_id: str
    reason: str = ""

    def to_domain(self) -> BlockSeller:
        return BlockSeller(self.seller_id, self.reason)


class BlockCardInput(_InputModel):
    type: Literal["BlockCard"]
    card_id: str
    reason: str = ""

    def to_domain(self) -> BlockCard:
        return BlockCard(self.card_id, self.reason)


class SubstitutionGroupInput(_InputModel):
    type: Literal["SubstitutionGroup"]
    group_id: str
    card_ids: list[str]

    def to_domain(self) -> SubstitutionGroup:
        return SubstitutionGroup(self.group_id, tuple(self.card_ids))


class BudgetPartitionInput(_InputModel):
    type: Literal["BudgetPartition"]
    tag: str
    cap: float

    def to_domain(self) -> BudgetPartition:
        return BudgetPartition(self.tag, self.cap)


DirectiveInput = Annotated[
    ForceIncludeInput
    | BlockSellerInput
    | BlockCardInput
    | SubstitutionGroupInput
    | BudgetPartitionInput,
    Field(discriminator="type"),
]

_directive_adapter: TypeAdapter[Any] = TypeAdapter(DirectiveInput)


class BudgetInput(_InputModel):
    max_total_spend: float
    max_per_seller: float | None = None
    max_per_card: float | None = None
    max_speculative_spend: float | None = None
    reserve_budget_percent: float = 0.0
    max_cost_ratio: float = 1.0
    mode: BudgetMode = BudgetMode.STRICT

    def to_domain(self) -> BudgetConfig:
        return BudgetConfig(
            max_total_spend=self.max_total_spend,
            max_per_seller=self.max_per_seller,
            max_per_card=self.max_per_card,
            max_speculative_spend=self.max_speculative_spend,
            reserve_budget_percent=self.reserve_budget_percent,
            max_cost_ratio=self.max_cost_ratio,
            mode=self.mode,
        )


class DeckInput(_InputModel):
    name: str
    status: DeckStatus
    deck_id: str = ""
    cards: dict[str, StrictInt] = Field(default_factory=dict)

    def to_domain(self) -> Deck:
        return Deck(self.deck_id or self.name, self.name, self.status, dict(self.cards))


class InventoryRowInput(_InputModel):
    card_id: str = Field(min_length=1)
    quantity: StrictInt
    reserved: StrictInt = 0
    alert_enabled: bool = False
    alert_threshold: StrictInt = 0

    def to_domain(self) -> InventoryRow:
        return InventoryRow(
            self.card_id,
            self.quantity,
            self.reserved,
            self.alert_enabled,
            self.alert_threshold,
        )


class DemandSourcesInput(_InputModel):
    decks: list[DeckInput] = Field(default_factory=list)
    inventory: list[InventoryRowInput] = Field(default_factory=list)
    include_queued_decks: bool = False

    def to_domain(self) -> DemandSources:
        return DemandSources(
            decks=[deck.to_domain() for deck in self.decks],
            inventory=[row.to_domain() for row in self.inventory],
            include_queued_decks=self.include_queued_decks,
        )


_price_map: TypeAdapter[dict[str, float]] = TypeAdapter(dict[str, FiniteFloat])
_count_map: TypeAdapter[dict[str, StrictInt]] = TypeAdapter(dict[str, StrictInt])
_card_list: TypeAdapter[list[str]] = TypeAdapter(list[str])


# =============================================================================
# PARSING
# =============================================================================


def describe_validation_error(exc: ValidationError) -> str:
    """First validation problem as 'location: message'."""
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"]) or "value"
    return f"{location}: {error['msg']}"


def _records(raw: dict[str, Any], key: str) -> list[Any]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidRequestError(f"{key} must be an array")
    return value


def parse_demands(items: list[Any]) -> list[Demand]:
    demands: list[Demand] = []
    for index, item in enumerate(items):
        try:
            parsed = DemandInput.model_validate(item)
        except ValidationError as e:
            raise InvalidDemandError(f"demands[{index}] {describe_validation_error(e)}") from e
        demands.append(parsed.to_domain())
    return demands


def parse_offers(items: list[Any]) -> list[Offer]:
    offers: list[Offer] = []
    for index, item in enumerate(items):
        try:
            parsed = OfferInput.model_validate(item)
        except ValidationError as e:
            raise InvalidOfferError(f"offers[{index}] {describe_validation_error(e)}") from e
        offers.append(parsed.to_domain())
    return offers


def parse_directives(items: list[Any]) -> list[Directive]:
    directives: list[Directive] = []
    for index, item in enumerate(items):
        try:
            parsed = _directive_adapter.validate_python(item)
        except ValidationError as e:
            raise InvalidDirectiveError(
                f"directives[{index}] {describe_validation_error(e)}"
            ) from e
        directives.append(parsed.to_domain())
    return directives


def parse_budget(raw: Any) -> BudgetConfig:
    if raw is None:
        raise InvalidRequestError("budget is required")
    try:
        parsed = BudgetInput.model_validate(raw)
    except ValidationError as e:
        raise InconsistentBudgetError(f"budget {describe_validation_error(e)}") from e
    return parsed.to_domain()


def parse_demand_sources(raw: Any) -> DemandSources | None:
    if raw is None:
        return None
    try:
        parsed = DemandSourcesInput.model_validate(raw)
    except ValidationError as e:
        raise InvalidDemandError(f"demandSources {describe_validation_error(e)}") from e
    return parsed.to_domain()


def _validate_map(adapter: TypeAdapter[Any], raw: Any, key: str) -> Any:
    try:
        return adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidRequestError(f"{key} {describe_validation_error(e)}") from e


def parse_plan_request(raw: Any, cancel: CancellationToken | None = None) -> PlanRequest:
    """
    Build a PlanRequest from decoded JSON.

    Args:
        raw: Decoded JSON value
        cancel: Optional cancellation token to attach

    Returns:
        PlanRequest with validated domain records

    Raises:
        PlanInputError: Subclass matching the offending section
    """
    if not isinstance(raw, dict):
        raise InvalidRequestError("plan request must be a JSON object")

    unknown = sorted(set(raw) - REQUEST_KEYS)
    if unknown:
        raise InvalidRequestError(f"unknown fields: {', '.join(unknown)}")

    budget = parse_budget(raw.get("budget"))
    demands = parse_demands(_records(raw, "demands"))
    offers = parse_offers(_records(raw, "offers"))
    directives = parse_directives(_records(raw, "directives"))
    sources = parse_demand_sources(raw.get("demandSources"))

    hot_list = _validate_map(_card_list, raw.get("hotList") or [], "hotList")
    reference_prices = _validate_map(
        _price_map, raw.get("referencePrices") or {}, "referencePrices"
    )
    ages = _validate_map(
        _price_map, raw.get("referencePriceAgeHours") or {}, "referencePriceAgeHours"
    )
    inventory = _validate_map(_count_map, raw.get("inventory") or {}, "inventory")

    negative = sorted(card_id for card_id, count in inventory.items() if count < 0)
    if negative:
        raise InvalidRequestError(f"inventory has negative counts for: {', '.join(negative)}")

    fallback = raw.get("includeCardKingdomFallback", False)
    if not isinstance(fallback, bool):
        raise InvalidRequestError("includeCardKingdomFallback must be a boolean")

    return PlanRequest(
        budget=budget,
        demands=demands,
        directives=directives,
        offers=offers,
        hot_list=list(hot_list),
        reference_prices=dict(reference_prices),
        reference_price_age_hours=dict(ages),
        inventory=InventorySnapshot.from_dict(inventory),
        demand_sources=sources,
        include_card_kingdom_fallback=fallback,
        cancel=cancel,
    )


def parse_plan_request_json(text: str) -> PlanRequest:
    """Parse a JSON document into a PlanRequest."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidRequestError(f"invalid JSON: {e.msg} at line {e.lineno}") from e
    return parse_plan_request(raw)


def load_plan_request(path: Path) -> PlanRequest:
    """Read and parse a PlanRequest file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidRequestError(f"cannot read {path}: {e.strerror}") from e
    except UnicodeDecodeError as e:
        raise InvalidRequestError(
            f"{path} is not UTF-8 text: {e.reason} at byte {e.start}"
        ) from e
    return parse_plan_request_json(text)

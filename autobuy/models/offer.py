"""
Offer and shipping records.

Offer is the strict canonical shape every source (scraper, CSV upload,
marketplace API) must be normalized into. Marketplace quirks live only
in `marketplace` and the Shipping terms.
"""

import math
from dataclasses import dataclass

from autobuy.models.failure import InvalidOfferError


@dataclass(frozen=True, slots=True)
class Shipping:
    """
    Shipping terms for one order with a seller.

    Attributes:
        base: Flat cost for the order (None is treated as zero)
        per_unit: Additive cost per unit beyond the first
        free_at: Basket subtotal at which shipping becomes zero
    """

    base: float | None = 0.0
    per_unit: float | None = None
    free_at: float | None = None

    def __post_init__(self) -> None:
        if self.base is None and self.free_at is None:
            raise InvalidOfferError("shipping needs base or freeAt")
        terms = {"base": self.base, "perUnit": self.per_unit, "freeAt": self.free_at}
        for name, value in terms.items():
            if value is not None and not math.isfinite(value):
                raise InvalidOfferError(f"shipping {name} {value} must be a finite number")
        if self.base is not None and self.base < 0:
            raise InvalidOfferError(f"shipping base {self.base} must be >= 0")
        if self.per_unit is not None and self.per_unit < 0:
            raise InvalidOfferError(f"shipping perUnit {self.per_unit} must be >= 0")
        if self.free_at is not None and self.free_at < 0:
            raise InvalidOfferError(f"shipping freeAt {self.free_at} must be >= 0")

    @property
    def flat(self) -> float:
        return self.base or 0.0

    def cost_for(self, subtotal: float, units: int) -> float:
        """
        Shipping charged for a basket.

        Zero for an empty basket or once `free_at` is reached, otherwise
        base plus per_unit for every unit beyond the first.
        """
        if units <= 0:
            return 0.0
        if self.free_at is not None and subtotal >= self.free_at - 1e-9:
            return 0.0
        extra = (self.per_unit or 0.0) * (units - 1)
        return self.flat + extra


@dataclass(frozen=True, slots=True)
class Offer:
    """
    A concrete seller listing.

    Attributes:
        card_id: Printing identifier
        seller_id: Seller key; per-order marketplaces use one synthetic id
        marketplace: Venue code ("TCG", "CK", ...)
        unit_price: Price per unit, always > 0
        quantity_available: Units listed
        shipping: Shipping terms for an order with this seller
        condition: Condition string as listed ("NM", "LP", ...)
        seller_rating: Reliability in 0..1, None when unknown
        expires_at: Listing expiry as reported by the source
        offer_id: Stable identity, derived from the dedupe key when absent
    """

    card_id: str
    seller_id: str
    marketplace: str
    unit_price: float
    quantity_available: int
    shipping: Shipping
    condition: str = "NM"
    seller_rating: float | None = None
    expires_at: str | None = None
    offer_id: str = ""

    def __post_init__(self) -> None:
        if not self.card_id:
            raise InvalidOfferError("offer is missing cardId")
        if not self.seller_id:
            raise InvalidOfferError(f"{self.card_id}: offer is missing sellerId")
        if not math.isfinite(self.unit_price) or self.unit_price <= 0:
            raise InvalidOfferError(
                f"{self.card_id}@{self.seller_id}: unitPrice {self.unit_price} must be > 0"
            )
        if self.quantity_available < 0:
            raise InvalidOfferError(
                f"{self.card_id}@{self.seller_id}: quantityAvailable must be >= 0"
            )
        if not self.offer_id:
            object.__setattr__(self, "offer_id", offer_key_id(self))

    @property
    def dedupe_key(self) -> tuple[str, str, str, float, str]:
        return (self.card_id, self.seller_id, self.marketplace, self.unit_price, self.condition)

    @property
    def rating(self) -> float:
        return self.seller_rating if self.seller_rating is not None else 0.0


def offer_key_id(offer: Offer) -> str:
    """Build an identity from the fields that make two listings duplicates."""
    return (
        f"{offer.marketplace}:{offer.seller_id}:{offer.card_id}"
        f":{offer.condition}:{offer.unit_price:.2f}"
    )

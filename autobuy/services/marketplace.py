"""
Marketplace offer sources.

Each source normalizes its own conventions into canonical Offers:

- TCGplayer is per-seller: every seller key is its own basket with its
  own shipping terms.
- Card Kingdom is per-order: the whole marketplace is one synthetic
  seller priced at the retail reference list.

Listing fetches are thin httpx calls; all parsing happens on plain data
so it can be tested without the network.
"""

import logging
from collections.abc import Generator
from typing import NotRequired, TypedDict

import httpx

from autobuy.config import CARD_KINGDOM_MARKETPLACE, CARD_KINGDOM_SELLER_ID, settings
from autobuy.models.offer import Offer, Shipping

logger = logging.getLogger(__name__)

TCGPLAYER_MARKETPLACE = "TCG"
TCGPLAYER_LISTINGS_API = "https://mp-search-api.tcgplayer.com/v1/product/{product_id}/listings"
USER_AGENT = "Autobuy/1.0"

# Conditions never bought, compared lowercase
EXCLUDED_CONDITIONS = frozenset({"damaged"})

# Sellers with fewer sales are blended toward this rating
LOW_SALES_THRESHOLD = 100
LOW_SALES_PRIOR = 0.9


class TCGPlayerListing(TypedDict):
    """One raw listing as the TCGplayer listings endpoint returns it."""

    listingId: int
    productId: int
    condition: str
    quantity: int
    price: float
    sellerKey: str
    sellerName: NotRequired[str]
    sellerRating: NotRequired[float | None]
    sellerSales: NotRequired[int | None]
    shippingPrice: NotRequired[float | None]
    freeShippingMinimum: NotRequired[float | None]
    scryfallId: NotRequired[str | None]


def is_condition_excluded(condition: str, exclude_heavily_played: bool = False) -> bool:
    normalized = condition.lower().strip()
    if normalized in EXCLUDED_CONDITIONS or "damaged" in normalized:
        return True
    return exclude_heavily_played and "heavily" in normalized


def normalize_seller_rating(rating: float | None, sales: int | None) -> float | None:
    """
    Map a marketplace rating onto 0..1.

    Percent ratings (above 1) are scaled down. Sellers with fewer than
    100 sales are blended toward 0.9 in proportion to their sales count.
    """
    if rating is None:
        return None

    normalized = rating / 100 if rating > 1 else rating
    if sales is not None and sales < LOW_SALES_THRESHOLD:
        confidence = min(sales / LOW_SALES_THRESHOLD, 1.0)
        normalized = normalized * confidence + LOW_SALES_PRIOR * (1 - confidence)

    return max(0.0, min(1.0, normalized))


def normalize_tcgplayer_listings(
    listings: list[TCGPlayerListing],
    product_to_card: dict[int, str] | None = None,
    exclude_heavily_played: bool = False,
) -> list[Offer]:
    """
    Convert raw TCGplayer listings into Offers.

    Listings are skipped when damaged (or heavily played, if excluded),
    when seller, price or quantity is missing, or when the product has
    no card id mapping.

    Args:
        listings: Raw listings
        product_to_card: TCGplayer product id -> card id
        exclude_heavily_played: Also skip heavily played copies

    Returns:
        Offers in listing order
    """
    mapping = product_to_card or {}
    offers: list[Offer] = []
    skipped = 0

    for listing in listings:
        if is_condition_excluded(listing.get("condition", ""), exclude_heavily_played):
            skipped += 1
            continue

        price = listing.get("price")
        quantity = listing.get("quantity") or 0
        seller_key = listing.get("sellerKey")
        if not seller_key or price is None or price <= 0 or quantity < 1:
            skipped += 1
            continue

        card_id = listing.get("scryfallId") or mapping.get(listing.get("productId", 0))
        if not card_id:
            logger.warning(
                "tcgplayer_listing_unmapped",
                extra={"product_id": listing.get("productId")},
            )
            skipped += 1
            continue

        offers.append(
            Offer(
                card_id=card_id,
                seller_id=seller_key,
                marketplace=TCGPLAYER_MARKETPLACE,
                unit_price=float(price),
                quantity_available=int(quantity),
                shipping=Shipping(
                    base=listing.get("shippingPrice") or 0.0,
                    free_at=listing.get("freeShippingMinimum"),
                ),
                condition=listing["condition"],
                seller_rating=normalize_seller_rating(
                    listing.get("sellerRating"), listing.get("sellerSales")
                ),
                offer_id=f"{TCGPLAYER_MARKETPLACE}:{listing['listingId']}",
            )
        )

    logger.info(
        "tcgplayer_listings_normalized",
        extra={"listings": len(listings), "offers": len(offers), "skipped": skipped},
    )
    return offers


def get_tcgplayer_client() -> Generator[httpx.Client, None, None]:
    """
    Dependency that provides an httpx client for TCGplayer fetches.

    Usage in FastAPI:
        @router.post("/offers/tcgplayer")
        def import_offers(client: httpx.Client = Depends(get_tcgplayer_client)):
            ...
    """
    with httpx.Client(
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
        timeout=settings.tcgplayer_timeout_seconds,
    ) as client:
        yield client


def fetch_tcgplayer_listings(
    product_id: int,
    client: httpx.Client | None = None,
) -> list[TCGPlayerListing]:
    """
    Fetch raw listings for one TCGplayer product.

    Args:
        product_id: TCGplayer product id
        client: Optional httpx client for connection reuse

    Returns:
        Raw listings from the response's "results" array

    Raises:
        httpx.HTTPError: If the request fails
    """
    url = TCGPLAYER_LISTINGS_API.format(product_id=product_id)
    headers = {"User-Agent": USER_AGENT}

    if client:
        response = client.get(url, headers=headers)
    else:
        response = httpx.get(url, headers=headers, follow_redirects=True)

    response.raise_for_status()
    data = response.json()
    results: list[TCGPlayerListing] = data.get("results", [])
    return results


def card_kingdom_offers(
    card_ids: list[str],
    reference_prices: dict[str, float],
    quantities: dict[str, int],
    shipping: Shipping | None = None,
) -> list[Offer]:
    """
    Offers from the Card Kingdom retail list.

    Card Kingdom is one seller for the whole marketplace. A card gets an
    offer only when it has a positive reference price; the quantity
    listed is what the caller asks for.
    """
    terms = shipping or Shipping(
        base=settings.card_kingdom_shipping_base,
        free_at=settings.card_kingdom_free_at,
    )
    offers: list[Offer] = []
    for card_id in sorted(set(card_ids)):
        price = reference_prices.get(card_id)
        quantity = quantities.get(card_id, 0)
        if price is None or price <= 0 or quantity <= 0:
            continue
        offers.append(
            Offer(
                card_id=card_id,
                seller_id=CARD_KINGDOM_SELLER_ID,
                marketplace=CARD_KINGDOM_MARKETPLACE,
                unit_price=price,
                quantity_available=quantity,
                shipping=terms,
                seller_rating=1.0,
            )
        )
    return offers

"""
Parser for uploaded offer sheets.

Accepts CSV with a header row. Column names are matched
case-insensitively against a few common spellings:

- card id: cardId, card_id, scryfall_id, scryfallId
- seller: sellerId, seller_id, seller
- price: unitPrice, unit_price, price
- quantity: quantity, quantityAvailable, qty
- optional: marketplace, condition, shippingBase, perUnit, freeAt,
  sellerRating, offerId, expiresAt

Rows with nothing available are kept; the offer normalizer drops them.
"""

import csv
import math
from io import StringIO

from autobuy.models.failure import InvalidOfferError
from autobuy.models.offer import Offer, Shipping

DEFAULT_MARKETPLACE = "TCG"

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "card_id": ("cardid", "card_id", "scryfall_id", "scryfallid"),
    "seller_id": ("sellerid", "seller_id", "seller"),
    "unit_price": ("unitprice", "unit_price", "price"),
    "quantity": ("quantity", "quantityavailable", "quantity_available", "qty"),
    "marketplace": ("marketplace",),
    "condition": ("condition",),
    "shipping_base": ("shippingbase", "shipping_base", "shipping"),
    "per_unit": ("perunit", "per_unit"),
    "free_at": ("freeat", "free_at", "free_shipping_minimum"),
    "seller_rating": ("sellerrating", "seller_rating", "rating"),
    "offer_id": ("offerid", "offer_id"),
    "expires_at": ("expiresat", "expires_at"),
}

REQUIRED_COLUMNS = ("card_id", "seller_id", "unit_price", "quantity")


def _resolve_columns(fieldnames: list[str]) -> dict[str, str]:
    """Map canonical column names to the header spellings present."""
    resolved: dict[str, str] = {}
    for header in fieldnames:
        key = header.strip().lower()
        for canonical, aliases in COLUMN_ALIASES.items():
            if key in aliases and canonical not in resolved:
                resolved[canonical] = header
    return resolved


def _optional_float(value: str | None, column: str, line: int) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        number = float(value.strip().lstrip("$"))
    except ValueError as e:
        raise InvalidOfferError(f"line {line}: {column} '{value}' is not a number") from e
    if not math.isfinite(number):
        raise InvalidOfferError(f"line {line}: {column} '{value}' is not a finite number")
    return number


def parse_offer_csv(text: str) -> list[Offer]:
    """
    Parse an offer sheet.

    Returns:
        Offers in row order

    Raises:
        InvalidOfferError: On missing columns or unparseable values
    """
    reader = csv.DictReader(StringIO(text.strip()))
    if not reader.fieldnames:
        return []

    columns = _resolve_columns(list(reader.fieldnames))
    missing = [name for name in REQUIRED_COLUMNS if name not in columns]
    if missing:
        raise InvalidOfferError(f"offer sheet is missing columns: {', '.join(missing)}")

    def cell(row: dict[str, str], name: str) -> str | None:
        header = columns.get(name)
        if header is None:
            return None
        value = row.get(header)
        return value.strip() if value else None

    offers: list[Offer] = []
    # Header is line 1
    for line, row in enumerate(reader, start=2):
        if not any((value or "").strip() for value in row.values()):
            continue

        price = _optional_float(cell(row, "unit_price"), "price", line)
        if price is None:
            raise InvalidOfferError(f"line {line}: price is required")

        quantity_text = cell(row, "quantity") or ""
        try:
            quantity = int(quantity_text)
        except ValueError as e:
            raise InvalidOfferError(
                f"line {line}: quantity '{quantity_text}' is not an integer"
            ) from e

        base = _optional_float(cell(row, "shipping_base"), "shippingBase", line)
        free_at = _optional_float(cell(row, "free_at"), "freeAt", line)

        offers.append(
            Offer(
                card_id=cell(row, "card_id") or "",
                seller_id=cell(row, "seller_id") or "",
                marketplace=cell(row, "marketplace") or DEFAULT_MARKETPLACE,
                unit_price=price,
                quantity_available=quantity,
                shipping=Shipping(
                    base=base if base is not None or free_at is not None else 0.0,
                    per_unit=_optional_float(cell(row, "per_unit"), "perUnit", line),
                    free_at=free_at,
                ),
                condition=cell(row, "condition") or "NM",
                seller_rating=_optional_float(cell(row, "seller_rating"), "sellerRating", line),
                expires_at=cell(row, "expires_at"),
                offer_id=cell(row, "offer_id") or "",
            )
        )

    return offers

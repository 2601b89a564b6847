"""
Planning API endpoints.

A thin HTTP adapter over plan_purchases(). The request body is the same
JSON PlanRequest the CLI reads; the response is an ApiResponse envelope.
The offer import routes turn an uploaded sheet or live TCGplayer
listings into canonical offer records for a later request.
"""

import logging
from typing import Annotated, Any

import httpx
from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from autobuy.models.failure import (
    ApiResponse,
    KnownError,
    PlanInputError,
    UpstreamFetchError,
    create_known_failure,
    create_success,
)
from autobuy.models.offer import Offer
from autobuy.parsers.offer_csv import parse_offer_csv
from autobuy.parsers.plan_request import parse_plan_request
from autobuy.services.marketplace import (
    fetch_tcgplayer_listings,
    get_tcgplayer_client,
    normalize_tcgplayer_listings,
)
from autobuy.services.pipeline import plan_purchases

logger = logging.getLogger(__name__)

router = APIRouter(tags=["plan"])


def _failure_response(error: KnownError) -> JSONResponse:
    envelope = create_known_failure(error)
    return JSONResponse(
        status_code=error.status_code,
        content=envelope.model_dump(mode="json"),
    )


def _offer_record(offer: Offer) -> dict[str, Any]:
    return {
        "offerId": offer.offer_id,
        "cardId": offer.card_id,
        "sellerId": offer.seller_id,
        "marketplace": offer.marketplace,
        "unitPrice": offer.unit_price,
        "quantityAvailable": offer.quantity_available,
        "condition": offer.condition,
        "sellerRating": offer.seller_rating,
        "shipping": {
            "base": offer.shipping.base,
            "perUnit": offer.shipping.per_unit,
            "freeAt": offer.shipping.free_at,
        },
    }


@router.post(
    "/plan",
    response_model=ApiResponse[dict[str, Any]],
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ApiResponse[Any]}},
)
async def create_plan(
    body: Annotated[Any, Body()],
) -> ApiResponse[dict[str, Any]] | JSONResponse:
    """
    Plan purchases for a request.

    Returns the plan even when demand remains unfilled. Structural input
    errors return 422 with a known-failure envelope.
    """
    try:
        request = parse_plan_request(body)
        plan = plan_purchases(request)
    except PlanInputError as e:
        logger.info("plan_rejected", extra={"kind": e.kind.value, "detail": e.detail})
        return _failure_response(e)

    return create_success(plan.to_dict())


class OfferSheetRequest(BaseModel):
    """Request model for importing offers from an uploaded sheet."""

    text: str = Field(
        ...,
        description="Raw CSV text with a header row",
        examples=["cardId,sellerId,price,quantity\ncard-a,seller-1,2.50,4"],
    )


@router.post(
    "/offers/csv",
    response_model=ApiResponse[list[dict[str, Any]]],
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ApiResponse[Any]}},
)
async def import_offer_csv(
    request: OfferSheetRequest,
) -> ApiResponse[list[dict[str, Any]]] | JSONResponse:
    """Parse an uploaded offer sheet into canonical offer records."""
    try:
        offers = parse_offer_csv(request.text)
    except PlanInputError as e:
        return _failure_response(e)

    return create_success([_offer_record(offer) for offer in offers])


class TcgplayerImportRequest(BaseModel):
    """Request model for importing live TCGplayer listings."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_ids: list[int] = Field(..., min_length=1, description="TCGplayer product ids")
    product_to_card: dict[int, str] = Field(
        default_factory=dict,
        description="Card id for each product whose listings carry no Scryfall id",
    )
    exclude_heavily_played: bool = Field(
        default=False,
        description="Also skip heavily played copies",
    )


@router.post(
    "/offers/tcgplayer",
    response_model=ApiResponse[list[dict[str, Any]]],
    responses={status.HTTP_502_BAD_GATEWAY: {"model": ApiResponse[Any]}},
)
def import_tcgplayer_offers(
    request: TcgplayerImportRequest,
    client: Annotated[httpx.Client, Depends(get_tcgplayer_client)],
) -> ApiResponse[list[dict[str, Any]]] | JSONResponse:
    """
    Fetch TCGplayer listings for each product and normalize them to offers.

    Products are fetched in the order given. Any upstream failure aborts
    the import with 502.
    """
    offers: list[Offer] = []
    for product_id in request.product_ids:
        try:
            listings = fetch_tcgplayer_listings(product_id, client=client)
        except httpx.HTTPError as e:
            logger.warning(
                "tcgplayer_fetch_failed",
                extra={"product_id": product_id, "error": type(e).__name__},
            )
            return _failure_response(
                UpstreamFetchError("TCGplayer", f"product {product_id}: {type(e).__name__}")
            )
        offers.extend(
            normalize_tcgplayer_listings(
                listings,
                product_to_card=request.product_to_card,
                exclude_heavily_played=request.exclude_heavily_played,
            )
        )

    return create_success([_offer_record(offer) for offer in offers])

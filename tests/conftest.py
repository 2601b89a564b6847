from collections.abc import Callable
from typing import Any

import pytest

from autobuy.config import Settings
from autobuy.models.budget import BudgetConfig
from autobuy.models.demand import Demand, DemandPriority
from autobuy.models.offer import Offer, Shipping


@pytest.fixture
def settings() -> Settings:
    """Default settings, isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def budget() -> BudgetConfig:
    """A roomy STRICT budget that never binds in small scenarios."""
    return BudgetConfig(max_total_spend=1000.0)


@pytest.fixture
def make_offer() -> Callable[..., Offer]:
    """Factory for offers with free shipping unless terms are given."""

    def factory(
        card_id: str,
        seller_id: str,
        unit_price: float,
        quantity: int = 4,
        base: float | None = 0.0,
        per_unit: float | None = None,
        free_at: float | None = None,
        marketplace: str = "TCG",
        rating: float | None = None,
        offer_id: str = "",
    ) -> Offer:
        return Offer(
            card_id=card_id,
            seller_id=seller_id,
            marketplace=marketplace,
            unit_price=unit_price,
            quantity_available=quantity,
            shipping=Shipping(base=base, per_unit=per_unit, free_at=free_at),
            seller_rating=rating,
            offer_id=offer_id,
        )

    return factory


@pytest.fixture
def make_demand() -> Callable[..., Demand]:
    def factory(
        card_id: str,
        quantity: int = 1,
        max_unit_price: float | None = None,
        priority: DemandPriority = DemandPriority.DECK_ACTIVE,
        tags: tuple[str, ...] = (),
    ) -> Demand:
        return Demand(
            card_id=card_id,
            quantity=quantity,
            max_unit_price=max_unit_price,
            priority=priority,
            source_tags=frozenset(tags),
        )

    return factory


@pytest.fixture
def plan_request_json() -> dict[str, Any]:
    """A small valid PlanRequest in its JSON shape."""
    return {
        "demands": [
            {"cardId": "bolt", "quantity": 2, "sourceTags": ["deck:Burn"]},
            {"cardId": "swiftspear", "quantity": 1},
        ],
        "offers": [
            {
                "cardId": "bolt",
                "sellerId": "seller-1",
                "marketplace": "TCG",
                "unitPrice": 1.5,
                "quantityAvailable": 4,
                "shipping": {"base": 1.0, "freeAt": 5.0},
                "sellerRating": 0.98,
            },
            {
                "cardId": "swiftspear",
                "sellerId": "seller-1",
                "marketplace": "TCG",
                "unitPrice": 2.0,
                "quantityAvailable": 1,
                "shipping": {"base": 1.0, "freeAt": 5.0},
            },
        ],
        "referencePrices": {"bolt": 2.0, "swiftspear": 3.0},
        "budget": {"maxTotalSpend": 50.0},
    }

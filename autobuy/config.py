from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="AUTOBUY_")

    app_name: str = "Autobuy Planner"
    debug: bool = False
    log_level: str = "INFO"

    # Heuristic basket size used to amortize flat shipping when ranking offers
    expected_basket_size: int = 3

    # Seller consolidation score weights (alpha above both beta and gamma)
    score_alpha: float = 10.0
    score_beta: float = 1.0
    score_gamma: float = 2.0

    # Sellers covering fewer distinct demands are left to gap filling
    min_consolidation_demands: int = 2

    # Bounded hill-climbing rounds that move single units between baskets
    local_improvement_rounds: int = 10

    # Hot-list cards are topped up toward this many units on hand
    hot_list_target_inventory: int = 4

    # maxUnitPrice = reference price * percent / 100
    price_threshold_percent: float = 100.0

    # Reference prices older than this are reported as stale
    stale_reference_hours: float = 72.0

    # Budget utilization warning levels (percent of maxTotalSpend)
    budget_warning_percent: float = 80.0
    budget_critical_percent: float = 95.0

    # Shipping terms for the Card Kingdom per-order marketplace
    card_kingdom_shipping_base: float = 4.99
    card_kingdom_free_at: float | None = 50.0

    # TCGplayer listing fetches
    tcgplayer_timeout_seconds: float = 10.0


settings = Settings()


# =============================================================================
# PLANNER CONSTANTS
# =============================================================================

# Money comparisons tolerate float noise below this
MONEY_EPSILON = 1e-9

# Synthetic seller and marketplace codes for Card Kingdom
CARD_KINGDOM_MARKETPLACE = "CK"
CARD_KINGDOM_SELLER_ID = "CK"

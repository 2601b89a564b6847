from autobuy.api.health import router as health_router
from autobuy.api.plan import router as plan_router

__all__ = [
    "health_router",
    "plan_router",
]

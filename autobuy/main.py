import logging
from importlib.metadata import version as pkg_version

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autobuy.api import health_router, plan_router
from autobuy.config import settings

logging.basicConfig(level=settings.log_level)

app = FastAPI(
    title=settings.app_name,
    version=pkg_version("autobuy"),
    debug=settings.debug,
)

app.include_router(health_router)
app.include_router(plan_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

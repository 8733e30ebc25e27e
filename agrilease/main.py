"""AgriLease API entrypoint: `uvicorn agrilease.main:app`."""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# agrilease/.env is for local runs; pytest sets the environment itself
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

from agrilease.api import escrow, health, listings, payments, pricing, rentals, users
from agrilease.core.config import settings, validate_config
from agrilease.core.database import create_all_tables, get_db_session
from agrilease.core.errors import install_error_handlers
from agrilease.core.logging import configure_logging
from agrilease.core.metrics import catalog_plans_loaded
from agrilease.core.middleware.metrics import MetricsMiddleware
from agrilease.core.middleware.request_id import RequestIdMiddleware
from agrilease.core.validation import validate_env
from agrilease.features.pricing.catalog import default_plans, load_catalog
from agrilease.features.pricing.repository import PlanRepository

logger = logging.getLogger("agrilease")

ROUTERS = (
    pricing.router,
    listings.router,
    rentals.router,
    escrow.router,
    payments.router,
    users.router,
    health.router,
    health.root_router,
)


def load_plan_catalog():
    """Provision the default plans (idempotent) and load the active catalog."""
    with get_db_session() as session:
        provisioned = PlanRepository(session).provision(default_plans(settings.SUBSCRIPTION_TRIAL_DAYS))
        catalog = load_catalog(session, settings.PRICING_MODEL)
    catalog_plans_loaded.set(len(catalog))
    logger.info(
        "catalog.loaded",
        extra={"plans": len(catalog), "provisioned": provisioned, "pricing_model": catalog.pricing_model},
    )
    return catalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("agrilease.starting", extra={"env": settings.ENV})
    create_all_tables()
    app.state.catalog = load_plan_catalog()
    try:
        yield
    finally:
        logger.info("agrilease.stopping")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_env()
    validate_config(strict=settings.CONFIG_STRICT)

    application = FastAPI(title="AgriLease", lifespan=lifespan)

    # Last added runs first: CORS, then metrics, then request ids
    application.add_middleware(RequestIdMiddleware)
    application.add_middleware(MetricsMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(application)

    for router in ROUTERS:
        application.include_router(router)

    @application.get("/")
    def root():
        return {"service": "agrilease", "status": "ok"}

    return application


app = create_app()

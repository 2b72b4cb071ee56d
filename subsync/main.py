import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from subsync.core.config import settings, validate_config
from subsync.core.database import create_all_tables, get_database_url
from subsync.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from subsync.core.logging import configure_logging
from subsync.core.middleware.request_id import RequestIdMiddleware
from subsync.core.validation import validate_env
from subsync.api import billing, health, metrics, usage
from subsync.features.billing.gateway import billing_enabled
from subsync.features.plans.catalog import init_catalog

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("subsync")
    logger.info("Starting subsync...")
    catalog = init_catalog()
    logger.info(f"Plan catalog loaded: {', '.join(e.tier.value for e in catalog.entries())}")
    if get_database_url():
        create_all_tables()
    if not billing_enabled():
        logger.warning("STRIPE_SECRET_KEY not set; billing actions are disabled")
    try:
        yield
    finally:
        logging.getLogger("subsync").info("Stopping subsync...")


app = FastAPI(title="subsync", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(usage.router, prefix="/api", tags=["usage"])
app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("subsync.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

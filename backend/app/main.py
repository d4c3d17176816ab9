"""P&L Ledger FastAPI Application.

Serves the cost basis / realized gain ledger read surface.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import init_db
from .routers import health, pnl
from .services.config import config_service, setup_logging, ConfigValidationException
from .services.price_resolver import ExchangePriceResolver

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        print(f"FATAL: {e}")
        print("Server cannot start with invalid configuration.")
        sys.exit(1)

    setup_logging(config_service)

    await init_db()
    logger.info("Database initialized")

    app.state.price_resolver = ExchangePriceResolver(
        exchange_ids=config_service.get("prices.exchanges"),
        quote_currencies=config_service.get("prices.quote_currencies"),
        cache_ttl_seconds=config_service.get("prices.cache_ttl_seconds", 60),
    )
    logger.info(f"Price resolver using exchanges {app.state.price_resolver.exchange_ids}")

    yield

    await app.state.price_resolver.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="P&L Ledger API",
    description="Cost basis and realized gain ledger for crypto portfolios",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(pnl.router, prefix="/api", tags=["P&L"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "P&L Ledger API", "docs": "/docs"}

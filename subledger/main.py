"""
Application Factory

Wires the ledger store, plan catalog, snapshot cache, payment gateway,
reconciler and facade into a FastAPI app. Every collaborator is built here
and stored on ``app.state``; nothing is a lazily initialized global.

Run:
    uvicorn subledger.main:app
"""

import asyncio
import logging

from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from subledger.billing.endpoints import billing_router, webhooks_router
from subledger.billing.external.stripe import StripeGateway
from subledger.billing.shared import BillingError, PlanCatalog, SnapshotCache
from subledger.billing.subscriptions import BillingService, SubscriptionReconciler
from subledger.core.conf import Settings, settings
from subledger.database.db import async_db_session, async_engine, create_tables

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Translate billing errors into their HTTP status and error body."""
    if exc.http_status >= 500:
        logger.error(f"[BILLING] {request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"[BILLING] {request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(
    config: Settings = settings,
    *,
    engine: Optional[AsyncEngine] = async_engine,
    session_factory: async_sessionmaker[AsyncSession] = async_db_session,
    gateway=None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Settings instance
        engine: Engine whose schema is created on startup (None to skip)
        session_factory: Session factory bound to the ledger store
        gateway: Payment gateway adapter (defaults to StripeGateway)
    """
    catalog = PlanCatalog.from_settings(config)
    cache = SnapshotCache(default_ttl=config.SNAPSHOT_CACHE_TTL, max_size=config.CACHE_MAX_ENTRIES)
    gateway = gateway or StripeGateway(config, catalog)
    reconciler = SubscriptionReconciler(session_factory, catalog, cache, config)
    service = BillingService(session_factory, reconciler, gateway, catalog, cache, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the schema and run the cache sweep for the app's lifetime."""
        if engine is not None:
            await create_tables(engine)
        sweeper = asyncio.create_task(cache.run_sweeper(config.CACHE_SWEEP_INTERVAL))
        logger.info(f"[BILLING] Started ({config.ENVIRONMENT})")

        yield

        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

    app = FastAPI(
        title=config.FASTAPI_TITLE,
        description=config.FASTAPI_DESCRIPTION,
        lifespan=lifespan,
        docs_url=None if config.ENVIRONMENT == 'prod' else '/docs',
        openapi_url=None if config.ENVIRONMENT == 'prod' else '/openapi.json',
    )
    app.exception_handler(BillingError)(billing_exception_handler)

    app.state.catalog = catalog
    app.state.cache = cache
    app.state.gateway = gateway
    app.state.reconciler = reconciler
    app.state.billing_service = service

    app.include_router(webhooks_router)  # /webhooks/payment
    app.include_router(billing_router, prefix=config.FASTAPI_API_V1_PATH)  # /api/v1/billing/*
    return app


app = create_app()

"""
FastAPI application factory.

`create_app()` builds every component exactly once (settings, storage,
collaborators, services) and exposes them as `app.state.container`.
Collaborators default to in-memory implementations; deployments pass their
own (see `services/merchant`).
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from acp_merchant.auth import RequestAuthenticator
from acp_merchant.catalog import CatalogProvider, FlatRateTotals, InMemoryCatalog, TotalsCalculator
from acp_merchant.checkout import CheckoutService
from acp_merchant.config import Settings
from acp_merchant.database import create_engine, create_sessionmaker, init_db, utcnow
from acp_merchant.errors import ACPSellerError, ServerError, ValidationError
from acp_merchant.idempotency import (
    IdempotencyCache,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    create_redis_client,
)
from acp_merchant.logging_config import configure_logging
from acp_merchant.maintenance import MaintenanceRunner
from acp_merchant.orders import InMemoryOrderFulfillment, OrderFulfillment
from acp_merchant.payment import PaymentProcessor, create_payment_processor
from acp_merchant.router import create_checkout_router
from acp_merchant.store import SessionStore, WebhookStore
from acp_merchant.webhooks import WebhookDispatcher


logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: Optional[AsyncEngine]
    sessionmaker: async_sessionmaker[AsyncSession]
    sessions: SessionStore
    webhook_store: WebhookStore
    idempotency: IdempotencyCache
    authenticator: RequestAuthenticator
    catalog: CatalogProvider
    totals: TotalsCalculator
    payments: PaymentProcessor
    orders: OrderFulfillment
    checkout: CheckoutService
    dispatcher: WebhookDispatcher
    maintenance: MaintenanceRunner


def build_container(
    settings: Settings,
    *,
    engine: Optional[AsyncEngine] = None,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    catalog: Optional[CatalogProvider] = None,
    totals: Optional[TotalsCalculator] = None,
    payments: Optional[PaymentProcessor] = None,
    orders: Optional[OrderFulfillment] = None,
    idempotency_store: Optional[IdempotencyStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], datetime] = utcnow,
    epoch_clock: Callable[[], float] = time.time,
) -> Container:
    if sessionmaker is None:
        engine = engine or create_engine(settings.database_url)
        sessionmaker = create_sessionmaker(engine)

    if idempotency_store is None:
        if settings.redis_enabled:
            idempotency_store = RedisIdempotencyStore(create_redis_client(settings))
        else:
            idempotency_store = InMemoryIdempotencyStore()
    idempotency = IdempotencyCache(
        idempotency_store,
        processing_ttl=settings.idempotency_processing_ttl,
        result_ttl=settings.idempotency_result_ttl,
        replay=settings.idempotency_replay,
    )

    catalog = catalog or InMemoryCatalog()
    totals = totals or FlatRateTotals(settings.tax_rate)
    payments = payments or create_payment_processor()
    orders = orders or InMemoryOrderFulfillment()

    sessions = SessionStore(sessionmaker, clock=clock)
    webhook_store = WebhookStore(sessionmaker, clock=clock)
    checkout = CheckoutService(
        settings, sessions, catalog, totals, payments, orders, clock=clock
    )
    dispatcher = WebhookDispatcher(
        settings, webhook_store, orders, http_client=http_client, clock=clock
    )
    orders.add_status_listener(dispatcher.handle_order_status_change)

    return Container(
        settings=settings,
        engine=engine,
        sessionmaker=sessionmaker,
        sessions=sessions,
        webhook_store=webhook_store,
        idempotency=idempotency,
        authenticator=RequestAuthenticator(settings, idempotency, clock=epoch_clock),
        catalog=catalog,
        totals=totals,
        payments=payments,
        orders=orders,
        checkout=checkout,
        dispatcher=dispatcher,
        maintenance=MaintenanceRunner(settings, sessions, webhook_store, dispatcher, clock=clock),
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ACPSellerError)
    async def acp_error_handler(request: Request, exc: ACPSellerError):
        return JSONResponse(status_code=exc.status_code, content=exc.body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        error = ValidationError(message)
        return JSONResponse(status_code=error.status_code, content=error.body.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error in %s %s", request.method, request.url.path)
        error = ServerError("Internal server error")
        return JSONResponse(status_code=error.status_code, content=error.body.model_dump())


def create_app(
    settings: Optional[Settings] = None,
    *,
    create_tables: bool = True,
    **components,
) -> FastAPI:
    """
    Build the merchant API. Keyword arguments are passed to
    `build_container()` to override collaborators and storage.
    """
    settings = settings or Settings.from_env()
    container = build_container(settings, **components)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        if not settings.is_production_ready():
            logger.error(
                "ACP configuration incomplete, missing: %s",
                ", ".join(settings.missing_required_settings()),
            )
        if create_tables and container.engine is not None:
            await init_db(container.engine)
        logger.info("ACP merchant API started")
        yield
        if container.engine is not None:
            await container.engine.dispose()

    app = FastAPI(
        title="ACP Merchant API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container
    register_exception_handlers(app)

    app.include_router(
        create_checkout_router(container.checkout, container.authenticator, container.idempotency)
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

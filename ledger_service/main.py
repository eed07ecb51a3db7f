"""
Billing ledger API: balances, transaction history, consumption, Stripe
recharges and the metered model proxy.

The factory owns every process-wide resource (engine, session factory,
Stripe gateway, Redis, debit dispatcher). Run with:

    uvicorn ledger_service.main:create_app --factory
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from ledger_service.api.routes import billing, chat, health
from ledger_service.core.config import settings
from ledger_service.core.logging import configure_logging
from ledger_service.db.session import build_engine, build_session_factory
from ledger_service.services.idempotency import IdempotencyStore
from ledger_service.services.metering.dispatcher import CeleryDebitDispatcher, DebitDispatcher
from ledger_service.services.payments.stripe_gateway import StripeGateway
from ledger_service.services.upstream.client import ModelClient
from ledger_service.utils.metrics import router as metrics_router

logger = logging.getLogger("ledger_service.request")


def create_app(
    session_factory: sessionmaker | None = None,
    payment_gateway: StripeGateway | None = None,
    debit_dispatcher: DebitDispatcher | None = None,
    model_client: ModelClient | None = None,
    idempotency_store: IdempotencyStore | None = None,
) -> FastAPI:
    configure_logging()

    engine = None
    if session_factory is None:
        engine = build_engine()
        session_factory = build_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if engine is not None:
            engine.dispose()

    app = FastAPI(
        title="Ledger Billing API",
        description="Account balances, transaction ledger, recharges and metered model usage",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.payment_gateway = payment_gateway or StripeGateway()
    app.state.debit_dispatcher = debit_dispatcher or CeleryDebitDispatcher()
    app.state.model_client = model_client or ModelClient()
    app.state.idempotency_store = idempotency_store or IdempotencyStore()

    # CORS (the model proxy is called from desktop and browser clients)
    origins = settings.cors_origins_list or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get(settings.request_id_header) or uuid.uuid4().hex
        started = time.perf_counter()
        response = await call_next(request)
        response.headers[settings.request_id_header] = request_id
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response

    # Routers
    app.include_router(health.router, tags=["health"])
    app.include_router(billing.router)
    app.include_router(chat.router)
    app.include_router(metrics_router)
    return app

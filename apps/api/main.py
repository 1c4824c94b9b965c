"""
Sandbox Billing - FastAPI Backend
Main application entry point: lifespan wiring, error mapping, and routing.
"""

import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings, validate_security_settings
from database import build_engine, build_session_maker, create_schema
import models  # noqa: F401
from routers import auth, billing, health, sandbox
from services.errors import BillingError
from services.payments import PaymentGateway
from services.reconciliation import run_reconciliation

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _periodic_reconciliation(app: FastAPI) -> None:
    interval_minutes = max(int(settings.RECONCILE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_reconciliation(app.state.session_maker)
            if result["mismatches"]:
                logger.error(
                    "Ledger reconciliation found %s mismatched accounts out of %s",
                    len(result["mismatches"]),
                    result["checked"],
                )
        except Exception as exc:
            logger.warning("Ledger reconciliation tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    configure_logging()
    logger.info("Starting Sandbox Billing API...")
    validate_security_settings()

    app.state.engine = build_engine()
    app.state.session_maker = build_session_maker(app.state.engine)
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            await create_schema(app.state.engine)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)

    app.state.payment_gateway = PaymentGateway.from_settings()
    app.state.redis = redis.from_url(settings.REDIS_URL, decode_responses=True)

    reconciliation_task = None
    if int(settings.RECONCILE_INTERVAL_MINUTES) > 0:
        reconciliation_task = asyncio.create_task(_periodic_reconciliation(app))
        logger.info(
            "Ledger reconciliation loop enabled (every %s min).",
            int(settings.RECONCILE_INTERVAL_MINUTES),
        )
    yield
    # Shutdown
    if reconciliation_task is not None:
        reconciliation_task.cancel()
        try:
            await reconciliation_task
        except asyncio.CancelledError:
            pass
    app.state.payment_gateway.close()
    await app.state.redis.aclose()
    await app.state.engine.dispose()
    logger.info("Shutting down API...")


app = FastAPI(
    title="Sandbox Billing API",
    description="Accounts, metered sandbox sessions, and credit billing",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(_request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(sandbox.router, prefix="/sandbox", tags=["Sandbox"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Sandbox Billing API",
        "version": "0.1.0",
        "status": "running"
    }

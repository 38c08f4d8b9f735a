import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from credit_ledger.core import config
from credit_ledger.core.errors import (
    AccountNotFound,
    CreditLedgerError,
    InsufficientCredits,
    InvalidAmount,
    InvalidReferral,
    InvalidStatusTransition,
    SubscriptionNotFound,
)
from credit_ledger.core.logging_config import setup_logging
from credit_ledger.api.routes import admin, billing_webhook, credits, health, rewards

setup_logging(config.LOG_LEVEL, config.LOG_DIR)
logger = logging.getLogger(__name__)


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.RUN_MIGRATIONS:
        from credit_ledger.db.migrate import run_migrations
        run_migrations()
    yield


app = FastAPI(title="Credit Ledger", lifespan=lifespan)


# ============================================
# ✅ ERROR MAPPING
# ============================================

ERROR_STATUS = {
    InsufficientCredits: 402,
    InvalidAmount: 422,
    InvalidReferral: 422,
    AccountNotFound: 404,
    SubscriptionNotFound: 404,
    InvalidStatusTransition: 409,
}


@app.exception_handler(CreditLedgerError)
async def credit_ledger_error_handler(request: Request, exc: CreditLedgerError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        400,
    )
    logger.info(f"{type(exc).__name__} on {request.url.path}: {exc}")
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientCredits):
        content["required"] = exc.required
        content["available"] = exc.available
    return JSONResponse(status_code=status_code, content=content)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(health.router)
app.include_router(credits.router)
app.include_router(rewards.router)
app.include_router(admin.router)
app.include_router(billing_webhook.router)

"""
FastAPI application entry point.
"""
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from storefront.config import settings
from storefront.logging_config import configure_logging
from storefront.models import Base
from storefront.database import engine
from storefront.routers.accounts import router as accounts_router
from storefront.routers.orders import router as orders_router
from storefront.routers.payments import router as payments_router
from storefront.routers.webhooks import router as webhooks_router

log = structlog.get_logger(component="app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and create all tables on startup (idempotent)."""
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    Base.metadata.create_all(bind=engine)
    log.info("startup", service=settings.APP_NAME, version=settings.APP_VERSION)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
## Storefront transaction core

Orders, balances and payments for a digital-goods storefront.

### Features
- **Atomic purchases**: stock, balance, order, key and ledger entry commit together or not at all.
- **Guarded updates**: `SELECT ... FOR UPDATE` plus conditional `UPDATE`s, so the last unit of stock and the last coin are sold once.
- **Append-only ledger**: every balance change is one immutable entry; the balance always equals their sum.
- **Pluggable payment providers**: deposits and refunds through a provider registry configured from the database.
- **Idempotent completion**: replayed webhooks and repeated confirmations never credit twice.

### Core Flows
1. **Purchase**: buy catalog items from the balance and receive keys.
2. **Deposit**: top up the balance through a payment provider.
3. **Webhook**: providers report the outcome of asynchronous payments.
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(orders_router)
app.include_router(accounts_router)
app.include_router(payments_router)
app.include_router(webhooks_router)


# ── Global exception handler ──────────────────────────────────────────────────
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.error("unhandled_error", path=request.url.path, method=request.method, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


# ── Health check ──────────────────────────────────────────────────────────────
@app.get("/health", tags=["System"], summary="Health check")
def health():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.APP_VERSION}


@app.get("/", tags=["System"], summary="Root")
def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8000, reload=True)

"""
CourierHub
FastAPI application entry point

- Carrier webhooks, quotes, booking, NDR and COD finance routes under /api
- Rate limiting with SlowAPI
- Structured error bodies for CourierHubError
- Background fulfillment jobs (scheduled actions, NDR sweep, early remittance)
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.responses import JSONResponse

from courierhub.api.routes import finance, ndr, orders, quotes, warehouses, webhooks
from courierhub.core.config import settings
from courierhub.core.database import AsyncSessionLocal, Base, engine
from courierhub.core.exceptions import CourierHubError
from courierhub.core.rate_limit import limiter, rate_limit_exceeded_handler
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.services.fulfillment_jobs import start_fulfillment_jobs, stop_fulfillment_jobs

# Import models to register them with SQLAlchemy
import courierhub.models  # noqa: F401

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Initialize database and background jobs on startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.FULFILLMENT_JOBS_ENABLED:
        await start_fulfillment_jobs()
        logger.info("Fulfillment jobs ENABLED")
    else:
        logger.info("Fulfillment jobs DISABLED via config")

    yield

    await stop_fulfillment_jobs()

    # Close carrier HTTP clients to prevent connection leaks
    await CarrierFactory.close_all()
    logger.info("Carrier HTTP clients closed")


app = FastAPI(
    lifespan=lifespan,
    title="CourierHub API",
    description="Multi-carrier shipping, NDR and COD reconciliation for sellers",
    version="1.0.0",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(CourierHubError)
async def courierhub_error_handler(request: Request, exc: CourierHubError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(quotes.router, prefix="/api", tags=["Quotes"])
app.include_router(orders.router, prefix="/api", tags=["Orders"])
app.include_router(warehouses.router, prefix="/api", tags=["Warehouses"])
app.include_router(finance.router, prefix="/api", tags=["Finance"])
app.include_router(ndr.router, prefix="/api", tags=["NDR"])


@app.get("/", tags=["Health"])
async def root():
    return {"message": "CourierHub API", "environment": settings.ENVIRONMENT}


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with an actual DB ping.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status

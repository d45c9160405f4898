import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from deadman.api.v1 import check_in, cron, secrets

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
from deadman.config import settings
from deadman.core.rate_limit import limiter
from deadman.db.session import init_db
from deadman.services.errors import (
    CheckInTokenError,
    DeliveryNotFoundError,
    DeliveryNotRetryableError,
    InvalidTransitionError,
    SecretNotFoundError,
    SecretValidationError,
)
from deadman.services.http_client import close_http_client
from deadman.services.sweep import run_sweep
from prometheus_client import make_asgi_app

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_sweep():
    """In-process sweep for deployments without an external cron."""
    try:
        await run_sweep()
    except Exception:
        logger.exception("Scheduled sweep failed; next run will retry")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_production_config()
    await init_db()
    if settings.sweep_interval_minutes > 0:
        scheduler.add_job(
            scheduled_sweep,
            "interval",
            minutes=settings.sweep_interval_minutes,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info("In-process sweep every %s min", settings.sweep_interval_minutes)
    yield
    if scheduler.running:
        scheduler.shutdown()
    await close_http_client()


app = FastAPI(
    title="Dead Man's Switch API",
    description="Check-in, reminder and disclosure scheduling engine",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)


@app.exception_handler(SecretValidationError)
async def validation_error_handler(request: Request, exc: SecretValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(SecretNotFoundError)
async def not_found_handler(request: Request, exc: SecretNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DeliveryNotFoundError)
async def delivery_not_found_handler(request: Request, exc: DeliveryNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DeliveryNotRetryableError)
async def delivery_not_retryable_handler(request: Request, exc: DeliveryNotRetryableError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "status": exc.status})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "status": exc.status})


@app.exception_handler(CheckInTokenError)
async def check_in_token_handler(request: Request, exc: CheckInTokenError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "reason": exc.reason})


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if settings.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(secrets.router, prefix="/api/v1")
app.include_router(check_in.router, prefix="/api/v1")
app.include_router(cron.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"status": "ok"}

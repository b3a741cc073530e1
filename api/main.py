"""
api/main.py -- FastAPI application entry point for the CRM admin API.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the SPA's origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every long-lived collaborator (stores, Redis client, session
cache, auth services, statistics aggregator) once and hangs it on app.state.
Route handlers reach them through request.app.state; nothing is a module-level
singleton. Shutdown closes them in reverse order.

Error boundary: error_envelope() is the one function that turns any exception
into (status, envelope). Every exception handler below delegates to it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse, failure, success
from api.routes.v1.auth import router as auth_router
from api.routes.v1.customers import router as customers_router
from api.routes.v1.statistics import router as statistics_router
from api.routes.v1.task_stats import router as task_stats_router
from auth.captcha import CaptchaService
from auth.gate import AuthGate
from auth.service import AuthService
from auth.store import UserStore
from cache.store import SessionCache, create_redis_client
from core.config import get_settings
from core.errors import ApiError, ErrorCode, ValidationError, translate_integrity_error
from crm.store import CRMStore
from stats.aggregator import StatisticsAggregator

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("crmadmin.api")

# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Construct and tear down application-level resources.

    Startup order follows dependencies: stores and cache first, then the
    services that take them as constructor arguments.
    """
    settings = get_settings()
    logger.info("CRM admin API starting up")
    app.state.settings = settings
    app.state.user_store = UserStore()
    app.state.crm_store = CRMStore()
    app.state.cache = SessionCache(create_redis_client(settings))
    if not app.state.cache.ping():
        logger.warning("Redis unreachable at startup -- sessions will be rebuilt from the database")
    app.state.captcha = CaptchaService(app.state.cache, settings.captcha_ttl)
    app.state.auth_service = AuthService(app.state.user_store, app.state.cache, app.state.captcha, settings)
    app.state.auth_gate = AuthGate(app.state.user_store, app.state.cache, settings)
    app.state.stats = StatisticsAggregator(app.state.user_store, app.state.crm_store, settings)
    logger.info("Services initialized")

    yield

    app.state.cache.close()
    app.state.crm_store.close()
    app.state.user_store.close()
    logger.info("CRM admin API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="CRM Admin API",
    description="Authentication, session cache and sales statistics for the training CRM.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(customers_router, prefix="/api", tags=["Customers"])
app.include_router(statistics_router, prefix="/api", tags=["Statistics"])
app.include_router(task_stats_router, prefix="/api", tags=["Task Stats"])


# ---------------------------------------------------------------------------
# Error boundary
# ---------------------------------------------------------------------------

_HTTP_CODES = {
    400: ErrorCode.PARAM_ERROR,
    401: ErrorCode.AUTH_ERROR,
    403: ErrorCode.PERMISSION_ERROR,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.DUPLICATE_ERROR,
}


def error_envelope(exc: Exception, path: str) -> tuple[int, dict]:
    """Map any exception onto (HTTP status, response envelope).

    Typed ApiErrors carry their own status and code. Database constraint
    violations are translated first. Anything unrecognized is a 500 whose
    message says nothing about the cause.
    """
    if isinstance(exc, IntegrityError):
        exc = translate_integrity_error(exc)
    if isinstance(exc, ValidationError):
        return exc.status_code, failure(exc.code, exc.message, path, data=exc.details)
    if isinstance(exc, ApiError):
        return exc.status_code, failure(exc.code, exc.message, path)
    if isinstance(exc, RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        return 400, failure(ErrorCode.PARAM_ERROR, "Request validation failed.", path, data={"errors": errors})
    if isinstance(exc, RateLimitExceeded):
        return 429, failure(429, "Too many requests. Please try again later.", path)
    if isinstance(exc, StarletteHTTPException):
        code = _HTTP_CODES.get(exc.status_code, exc.status_code)
        return exc.status_code, failure(code, str(exc.detail), path)
    return 500, failure(ErrorCode.SYSTEM_ERROR, "Internal server error.", path)


def _respond(request: Request, exc: Exception) -> JSONResponse:
    status, body = error_envelope(exc, request.url.path)
    if status >= 500:
        logger.error(
            "%s %s failed: %s",
            request.method,
            request.url.path,
            body["message"],
            exc_info=(type(exc), exc, exc.__traceback__),
        )
    else:
        logger.warning("%s %s -> %d [%s] %s", request.method, request.url.path, status, body["code"], body["message"])
    headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(int(getattr(exc, "retry_after", 60)))}
    return JSONResponse(status_code=status, content=body, headers=headers)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return _respond(request, exc)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Constraint violations become 409/400 envelopes; the driver message stays in the log."""
    return _respond(request, exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return _respond(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body / query validation failures are 400 PARAM_ERROR with per-field details."""
    return _respond(request, exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _respond(request, exc)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The traceback goes to the log, never to the response body."""
    return _respond(request, exc)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router state.
# No rate limit -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> dict:
    """Report liveness plus database and cache reachability.

    Degraded dependencies are reported, not raised: the endpoint always
    answers 200 so the caller can read which part is down.
    """
    try:
        request.app.state.user_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        database = "error"
    cache = "ok" if request.app.state.cache.ping() else "error"
    status = "ok" if database == "ok" and cache == "ok" else "degraded"
    body = HealthResponse(status=status, version=VERSION, database=database, cache=cache)
    return success(body.model_dump(), path=request.url.path)

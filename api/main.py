"""
api/main.py -- FastAPI application entry point for the storefront and back-office API.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- ALLOWED_HOSTS check
  2. CORSMiddleware        -- adds CORS headers for the configured frontend origins
  3. SlowAPIMiddleware     -- per-route limits declared with @limiter.limit

Lifespan opens the four stores, seeds the built-in roles, permissions,
templates and plans, creates the three realtime hubs, and starts the payment
timeout sweep. Shutdown cancels the sweep and closes the stores.

401 and 403 responses produced by the auth dependencies (codes
"unauthorized" and "forbidden") are rewritten to a fixed localized message
chosen by ERROR_LOCALE, so clients can show them verbatim.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.hubs import router as hubs_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.notifications import router as notifications_router
from api.routes.v1.orders import router as orders_router
from api.routes.v1.payment_gateways import router as payment_gateways_router
from api.routes.v1.payments import router as payments_router
from api.routes.v1.posts import router as posts_router
from api.routes.v1.products import router as products_router
from api.routes.v1.rbac import router as rbac_router
from api.routes.v1.storefront import router as storefront_router
from api.routes.v1.support_admin import router as support_admin_router
from api.routes.v1.support_chat import router as support_chat_router
from api.routes.v1.tickets import router as tickets_router
from api.routes.v1.users import router as users_router
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore
from content.store import ContentStore
from core.config import get_settings
from payments.service import sweep_payment_timeouts
from realtime.hub import Hub
from shop.store import ShopStore
from support.store import SupportStore

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ktk.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Localized auth errors
# ---------------------------------------------------------------------------

AUTH_MESSAGES: dict[str, dict[int, str]] = {
    "vi": {
        401: "Bạn chưa đăng nhập hoặc phiên đăng nhập đã hết hạn.",
        403: "Bạn không có quyền truy cập chức năng này.",
    },
    "en": {
        401: "You are not signed in or your session has expired.",
        403: "You do not have permission to access this function.",
    },
}

_REWRITTEN_CODES = {401: "unauthorized", 403: "forbidden"}


def localized_auth_message(status_code: int, locale: str) -> str:
    messages = AUTH_MESSAGES.get(locale, AUTH_MESSAGES["vi"])
    return messages[status_code]


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_once(app: FastAPI) -> None:
    """Run one sweep round in a worker thread so the event loop stays free.

    Any error is logged and swallowed; the next round runs as scheduled.
    """
    try:
        await asyncio.to_thread(sweep_payment_timeouts, app.state.shop, _settings.payment_timeout_minutes)
    except Exception:
        logger.exception("Payment timeout sweep failed")


async def _sweep_loop(app: FastAPI) -> None:
    """Time out stale PayOS payments and unlock stuck carts on a fixed interval.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(_settings.sweep_interval_seconds)
        await _sweep_once(app)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores and hubs on startup; close them on shutdown.

    Seeding is idempotent, so restarting against an existing database keeps
    operator changes to roles, grants, templates and plans.
    """
    logger.info("Storefront API starting up")
    app.state.user_store = UserStore()
    app.state.user_store.seed_defaults()
    app.state.shop = ShopStore()
    app.state.shop.seed_defaults()
    app.state.support = SupportStore()
    app.state.support.seed_defaults()
    app.state.content = ContentStore()
    logger.info("Stores initialized")

    app.state.notification_hub = Hub("notifications")
    app.state.support_hub = Hub("support-chat")
    app.state.ticket_hub = Hub("tickets")

    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.content.close()
    app.state.support.close()
    app.state.shop.close()
    app.state.user_store.close()
    logger.info("Storefront API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keytietkiem Storefront API",
    description="Digital license storefront, PayOS payments, customer support and admin back-office.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in docs are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Guest-Cart-Id"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# slowapi reads the limiter from app.state.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(rbac_router, prefix="/api/v1", tags=["RBAC"])
app.include_router(products_router, prefix="/api/v1", tags=["Products"])
app.include_router(storefront_router, prefix="/api/v1", tags=["Storefront"])
app.include_router(orders_router, prefix="/api/v1", tags=["Orders"])
app.include_router(payments_router, prefix="/api/v1", tags=["Payments"])
app.include_router(payment_gateways_router, prefix="/api/v1", tags=["Settings"])
app.include_router(tickets_router, prefix="/api/v1", tags=["Tickets"])
app.include_router(support_chat_router, prefix="/api/v1", tags=["Support chat"])
app.include_router(support_admin_router, prefix="/api/v1", tags=["Support settings"])
app.include_router(posts_router, prefix="/api/v1", tags=["Posts"])
app.include_router(notifications_router, prefix="/api/v1", tags=["Notifications"])
app.include_router(hubs_router, tags=["Realtime"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI, for signed-in users only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title=app.title)


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc, for signed-in users only."""
    return get_redoc_html(openapi_url="/openapi.json", title=app.title)


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler answers {"error": {"code", "message"}}; domain errors raised
# with a dict detail keep their own code.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 validation_error for bad bodies, paths and query strings."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap HTTPException into the error envelope.

    Structured dict details are used as the error field directly. 401/403
    with the generic auth codes get the localized message; other codes
    (account_locked, invalid_signature, ...) keep their own wording.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        error = dict(exc.detail)
        if _REWRITTEN_CODES.get(exc.status_code) == error.get("code"):
            error["message"] = localized_auth_message(exc.status_code, _settings.error_locale)
        return JSONResponse(status_code=exc.status_code, content={"error": error}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback and answer 500 internal_error; the client never sees the trace."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    try:
        request.app.state.user_store.has_users()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})

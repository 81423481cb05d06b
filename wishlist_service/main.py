import socket
from contextlib import asynccontextmanager
from typing import Final

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from .application.catalog import CachedProductCatalog, ProductCatalog
from .config import settings
from .domain.exceptions import DomainError
from .infrastructure.cache import build_cache
from .infrastructure.database.database import get_main_engine, init_db
from .logging_config import get_logger, setup_logging
from .logging_utils import log_system_info
from .middleware import log_requests_middleware
from .presentation.api_routes import (
    api_router,
    mobile_router,
    pos_router,
    products_router,
)
from .presentation.error_handlers import (
    handle_domain_error,
    handle_request_validation_error,
    problem_response,
)
from .presentation.problem_details import ProblemDetailFactory
from .telemetry import setup_telemetry


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    logger = get_logger(__name__)

    # Schema is created once at startup; there are no migrations yet
    init_db(get_main_engine())
    logger.info("Database initialized", database_url=settings.database_url)

    hostname = socket.gethostname()
    try:
        ip_addr = socket.gethostbyname(hostname)
    except OSError:
        ip_addr = "unknown"
    log_system_info(hostname, ip_addr, settings.debug)

    yield

    logger.info("Application shutdown completed")


app: Final = FastAPI(
    title=settings.app_name,
    version=settings.version,
    debug=settings.debug,
    lifespan=lifespan,
    description="""
**Wishlist Service** - order staging for kiosk and mobile shoppers.

Customers compose a wishlist at a kiosk or in the mobile app and receive a
one-time QR code. A POS terminal scans the code, which claims the wishlist
exactly once, and then completes or cancels the sale.

## Lifecycle

`ACTIVE` -> `PROCESSING` (QR redeemed) -> `COMPLETED`, with `CANCELLED` and
`EXPIRED` reachable from any state. Wishlists expire after a configurable TTL;
expiry is applied on the next access.

## Idempotency

Send an `Idempotency-Key` header when creating a wishlist. A retried request
with the same key returns the original response with status 200.

## Errors

Errors are RFC 7807 Problem Details with a machine-readable `code`.

## Authentication

Requests are expected to come through an authenticated gateway; the owner
identifier is taken from the request as given.
    """.strip(),
    openapi_tags=[
        {"name": "wishlists", "description": "Create, search and manage wishlists"},
        {"name": "mobile", "description": "Owner-scoped operations for the app"},
        {"name": "pos", "description": "QR redemption and completion at the till"},
        {"name": "products", "description": "Cached product catalog listings"},
    ],
)

# Catalog lookups are disabled until a provider is configured
app.state.cache = build_cache(settings)
app.state.catalog = None


def configure_catalog(provider: ProductCatalog) -> None:
    """Install a product catalog provider behind the shared cache."""
    app.state.catalog = CachedProductCatalog(
        provider, app.state.cache, settings.catalog_cache_ttl_seconds
    )


setup_telemetry(app)

app.middleware("http")(log_requests_middleware)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    """Global handler for domain-specific errors."""
    logger = get_logger(__name__)
    logger.warning(
        "Domain error occurred",
        error_type=type(exc).__name__,
        error_code=exc.code,
        error_message=exc.message,
        path=request.url.path,
        method=request.method,
    )
    return handle_domain_error(exc, request)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Global handler for request-shape errors; reported as 400."""
    logger = get_logger(__name__)
    logger.warning(
        "Request validation error occurred",
        errors=exc.errors(),
        path=request.url.path,
        method=request.method,
    )
    return handle_request_validation_error(exc, request)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    """Global handler for database errors."""
    logger = get_logger(__name__)
    logger.error(
        "Database error occurred",
        error_type=type(exc).__name__,
        error_message=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return problem_response(
        ProblemDetailFactory.internal_server_error(
            detail="A database error occurred. Please try again.",
            instance=str(request.url.path),
        )
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global handler for unexpected errors."""
    logger = get_logger(__name__)
    logger.error(
        "Unexpected error occurred",
        error_type=type(exc).__name__,
        error_message=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return problem_response(
        ProblemDetailFactory.internal_server_error(instance=str(request.url.path))
    )


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok", "service": settings.app_name, "version": settings.version}


app.include_router(api_router)
app.include_router(mobile_router)
app.include_router(pos_router)
app.include_router(products_router)


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "wishlist_service.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )

"""
Main FastAPI application for Market Data Aggregator Service.
Includes lifespan management for provider clients and the mapping of
provider failures to HTTP responses.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
import time

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared_models.market_data import utc_now
from .core.config import Settings, settings as default_settings
from .core.logging_config import setup_logging, create_logger
from .api.endpoints import router as api_router
from .api.schemas import ErrorResponse
from .providers.base import (
    MalformedResponseError, ProviderError, RateLimitError, SymbolNotFoundError,
)
from .services.data_aggregator import AllProvidersFailedError, DataAggregatorService

# Setup logging first
setup_logging()
logger = create_logger(__name__)


def _error_response(
    status_code: int,
    error: str,
    error_code: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(error=error, error_code=error_code, details=details)),
        headers=headers
    )


async def all_providers_failed_handler(request: Request, exc: AllProvidersFailedError) -> JSONResponse:
    """Map an exhausted fallback chain to 404 for unknown symbols, 503 otherwise."""
    details = {
        "operation": exc.operation,
        "symbol": exc.symbol,
        "transient": exc.transient,
        "failures": [failure.dict() for failure in exc.failures],
    }

    if exc.all_not_found:
        return _error_response(404, str(exc), "SYMBOL_NOT_FOUND", details)

    headers = None
    if exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return _error_response(503, str(exc), "ALL_PROVIDERS_FAILED", details, headers)


async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    """Map a single provider failure to an HTTP status."""
    details = {"provider": exc.provider.value, "symbol": exc.symbol, "transient": exc.transient}

    if isinstance(exc, SymbolNotFoundError):
        return _error_response(404, exc.message, "SYMBOL_NOT_FOUND", details)

    if isinstance(exc, RateLimitError):
        retry_after = int(exc.retry_after) if exc.retry_after is not None else 60
        return _error_response(429, exc.message, "RATE_LIMITED", details, {"Retry-After": str(retry_after)})

    error_code = "MALFORMED_RESPONSE" if isinstance(exc, MalformedResponseError) else "UPSTREAM_ERROR"
    return _error_response(502, exc.message, error_code, details)


async def not_found_handler(request: Request, exc) -> JSONResponse:
    """Handle 404 errors with structured response."""
    return _error_response(404, "Endpoint not found", "NOT_FOUND", {
        "path": request.url.path,
        "method": request.method
    })


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open provider clients on startup and close them on shutdown."""
    service: DataAggregatorService = app.state.aggregator
    logger.info("Starting Market Data Aggregator Service", extra={
        "version": app.version,
        "providers": [provider.name for provider in service.providers]
    })

    await service.connect()
    app.state.started_at = utc_now()

    yield

    logger.info("Shutting down Market Data Aggregator Service")
    await service.disconnect()


async def log_requests(request: Request, call_next):
    """Log each request with its status and duration."""
    started = time.perf_counter()
    context = {"method": request.method, "path": request.url.path, "query": request.url.query or None}

    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("Unhandled error serving request", extra={
            **context,
            "error": str(e),
            "duration_ms": round((time.perf_counter() - started) * 1000, 2)
        })
        return _error_response(500, "Internal server error", "INTERNAL_ERROR")

    duration = time.perf_counter() - started
    logger.info("Request completed", extra={
        **context,
        "status_code": response.status_code,
        "duration_ms": round(duration * 1000, 2)
    })
    response.headers["X-Process-Time"] = f"{duration:.4f}"
    return response


def create_app(
    aggregator: Optional[DataAggregatorService] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        aggregator: Pre-built aggregator; when omitted one is built from settings
        settings: Configuration; defaults to the environment-loaded settings
    """
    settings = settings or default_settings

    app = FastAPI(
        title=settings.app_name,
        description="Normalized market data from Alpha Vantage, Finnhub and Polygon with provider fallback",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )
    app.state.aggregator = aggregator or DataAggregatorService.from_settings(settings)
    app.state.started_at = utc_now()

    # Read-only API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.middleware("http")(log_requests)

    app.add_exception_handler(AllProvidersFailedError, all_providers_failed_handler)
    app.add_exception_handler(ProviderError, provider_error_handler)
    app.add_exception_handler(404, not_found_handler)

    app.include_router(api_router, tags=["Market Data API"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "market_data_aggregator.main:app",
        host=default_settings.server_host,
        port=default_settings.server_port,
        reload=default_settings.debug,
        log_level=default_settings.log_level.lower(),
        access_log=True
    )

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import (
    get_cache_settings,
    get_cache_size_limit,
    get_settings,
    get_telemetry,
    get_throttler,
)
from backend.app.logging_config import configure_application_logging
from backend.app.services.errors import ErrorKind, FetchError

LOGGER = logging.getLogger("subdigest.api")
REQUEST_ID_HEADER = "X-Request-ID"

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_AVAILABLE: 404,
    ErrorKind.AUTH_INVALID: 401,
    ErrorKind.UNKNOWN: 502,
}


def health_check() -> dict[str, str]:
    return {"status": "ok"}


def _sweep_cache_stores() -> None:
    """Drop expired entries, then hold all namespaces together under the size cap."""
    expired, evicted = get_cache_size_limit().sweep()
    if expired or evicted:
        LOGGER.info("cache startup_sweep expired=%s evicted=%s", expired, evicted)


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    LOGGER.info(
        "api startup data_dir=%s quota_limit=%s throttle_per_minute=%s",
        settings.data_dir,
        settings.youtube_daily_quota_limit,
        settings.throttle_max_requests_per_minute,
    )

    if get_cache_settings().auto_cleanup_enabled:
        _sweep_cache_stores()

    try:
        yield
    finally:
        await get_throttler().aclose()
        LOGGER.info("api shutdown throttler_closed=true")


async def fetch_error_handler(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, FetchError)
    status_code = ERROR_STATUS_CODES[exc.kind]
    LOGGER.warning(
        "api fetch_error path=%s kind=%s status_code=%s detail=%s",
        request.url.path,
        exc.kind.value,
        status_code,
        exc.detail,
    )
    headers = {"WWW-Authenticate": "Bearer"} if exc.kind is ErrorKind.AUTH_INVALID else None
    return JSONResponse(status_code=status_code, content=exc.as_payload(), headers=headers)


def _resolve_request_id(request: Request) -> str:
    supplied = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return supplied or uuid4().hex


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a request id into the log context and report timing to telemetry."""
    telemetry = get_telemetry()
    request_id = _resolve_request_id(request)
    route = {"request_id": request_id, "method": request.method, "path": request.url.path}
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    )
    started_at = perf_counter()

    def elapsed_ms() -> int:
        return int((perf_counter() - started_at) * 1000)

    try:
        response = await call_next(request)
    except Exception as exc:
        telemetry.emit(
            "http.request.error", **route, duration_ms=elapsed_ms(), error_type=type(exc).__name__
        )
        raise
    finally:
        reset_contextvars(**context_tokens)

    response.headers[REQUEST_ID_HEADER] = request_id
    telemetry.emit(
        "http.request.finish", **route, duration_ms=elapsed_ms(), status_code=response.status_code
    )
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="Subdigest API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(FetchError, fetch_error_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()

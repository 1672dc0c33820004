"""Pourline API: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager

# structlog caches its processor chain on first use, so logging is configured
# before any other pourline module creates a logger.
from pourline.core.config import get_settings
from pourline.core.logging import configure_structlog

configure_structlog(
    log_level="DEBUG" if get_settings().debug else "INFO",
    json_logs=not get_settings().debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pourline.api.deps import build_sweeper
from pourline.api.routes import api_router
from pourline.core.exceptions import OrderError, RateLimitedError
from pourline.db import close_db, close_redis, init_db, init_redis
from pourline.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.shutting_down = False

    def drain(signum, frame):
        # Health turns 503 so the load balancer stops sending scans here
        app.state.shutting_down = True
        logger.info("sigterm_received")

    signal.signal(signal.SIGTERM, drain)

    await init_db()
    await init_redis()

    sweeper = build_sweeper() if settings.sweeper_enabled else None
    sweeper_task = asyncio.create_task(sweeper.run()) if sweeper else None
    logger.info("startup_complete", app_name=settings.app_name, sweeper=sweeper is not None)

    yield

    if sweeper is not None:
        sweeper.stop()
        await sweeper_task
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_response(
    request: Request,
    status_code: int,
    body: dict,
    headers: dict | None = None,
    log_event: str = "request_failed",
    **log_fields,
) -> JSONResponse:
    """Log a failed request and return its body tagged with a fresh debug_id.

    The debug_id is what support asks a buyer or bartender to read back; it
    joins the response to the server-side log line.
    """
    debug_id = str(uuid.uuid4())
    log = logger.error if status_code >= 500 else logger.info
    log(
        log_event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        method=request.method,
        path=request.url.path,
        user_id=getattr(request.state, "user_id", None),
        **log_fields,
    )
    return JSONResponse(status_code=status_code, content={**body, "debug_id": debug_id}, headers=headers)


async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return _error_response(
        request,
        exc.status_code,
        {**exc.context, "detail": exc.message, "code": exc.code.value},
        headers=headers,
        log_event="order_error",
        code=exc.code.value,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(
        request,
        exc.status_code,
        {"detail": exc.detail},
        headers=getattr(exc, "headers", None),
        log_event="http_exception",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never echo internals; the traceback stays in the log
    return _error_response(
        request,
        500,
        {"detail": "Internal server error"},
        log_event="unhandled_exception",
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Order lifecycle engine for metered self-serve pours",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Terminal-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    setup_correlation_middleware(app)

    app.add_exception_handler(OrderError, order_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("pourline.main:app", host="0.0.0.0", port=8000, reload=True)

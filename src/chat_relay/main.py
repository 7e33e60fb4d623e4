"""
Chat Relay - streaming chat completion relay service.

Relays completions from an OpenAI-compatible provider to browser clients
over Server-Sent Events and keeps the conversation transcript in order.

Endpoints:
    Chat:
        - POST /api/chat/{conversation_id} - Stream one assistant turn (SSE)

    Health:
        - GET /api/ping - Connectivity check for the frontend
        - GET /health - Health check
        - GET /health/live - Liveness check

    Internal:
        - GET /internal/metrics - Relay turn counters
        - GET /internal/audit - Audit event buffer (lost assistant turns, ...)

Run:
    uvicorn chat_relay.main:app --port 3000

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import sys
import time
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from chat_relay import __version__
from chat_relay.config import RelaySettings, get_settings
from chat_relay.errors import RelayError, create_error_response, internal_error, relay_error_response
from chat_relay.routers import chat
from chat_relay.routers.chat import RelayRuntime
from chat_relay.services.observability import configure_audit_buffer, get_audit_events, get_metric_snapshot
from chat_relay.services.tasks import TaskRegistry
from chat_relay.services.title_generator import TitleGenerator, TitleWorker
from chat_relay.services.transcript_store import TranscriptStore, create_transcript_store
from chat_relay.services.upstream import CompletionClient, OpenAICompatibleClient


# ============================================================================
# Logging Configuration
# ============================================================================

def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structured logging with structlog.

    Sets up structlog with JSON output for production and pretty printing
    for development (when LOG_FORMAT=console).

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # Shared processors
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format.lower() == "console":
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger("chat-relay")


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    settings: Optional[RelaySettings] = None,
    store: Optional[TranscriptStore] = None,
    upstream: Optional[CompletionClient] = None,
    enable_titles: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Collaborators passed in are used as is (and not closed on shutdown);
    missing ones are built from settings: the SQL store when DATABASE_URL
    is set, otherwise the in-memory store, and an OpenAI-compatible client.

    Args:
        settings: Relay settings (defaults to get_settings())
        store: Transcript store override
        upstream: Provider client override (fake upstream in tests)
        enable_titles: Run the auto-title worker

    Returns:
        FastAPI: Configured application

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    settings = settings or get_settings()
    owns_store = store is None
    owns_upstream = upstream is None

    store = store if store is not None else create_transcript_store(settings.database_url, echo=settings.sql_echo)
    upstream = upstream if upstream is not None else OpenAICompatibleClient(settings)
    title_worker = None
    if enable_titles:
        title_worker = TitleWorker(
            store,
            TitleGenerator(upstream, settings.title_model, timeout=settings.title_timeout),
            placeholder=settings.default_title,
        )
    runtime = RelayRuntime(
        settings=settings,
        store=store,
        upstream=upstream,
        title_worker=title_worker,
        tasks=TaskRegistry(),
    )
    configure_audit_buffer(settings.audit_event_buffer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Initializes the transcript store (creates tables)
            - Starts the auto-title worker

        Shutdown:
            - Stops the title worker after its queued jobs
            - Waits (bounded) for in-flight relay sessions
            - Closes the upstream client and the store if we built them
        """
        logger.info("chat_relay.startup", version=__version__)
        if owns_store:
            try:
                await store.init()
            except Exception as e:
                logger.error("chat_relay.store.error", error=str(e))
                raise
        if title_worker is not None:
            title_worker.start()
        logger.info("chat_relay.ready")

        yield

        logger.info("chat_relay.shutdown")
        await runtime.tasks.wait_all(timeout=settings.shutdown_grace_seconds)
        if title_worker is not None:
            await title_worker.stop()
        if owns_upstream:
            await upstream.aclose()
        if owns_store:
            await store.close()
        logger.info("chat_relay.shutdown.complete")

    app = FastAPI(
        title="Chat Relay",
        description="Streaming chat relay with a persisted transcript",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ------------------------------------------------------------------
    # CORS Middleware
    # ------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Response-Time"],
    )

    # ------------------------------------------------------------------
    # Exception Handlers
    # ------------------------------------------------------------------

    @app.exception_handler(RelayError)
    async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
        logger.warning(
            "chat_relay.relay_error",
            path=request.url.path,
            kind=exc.kind,
            error=str(exc),
        )
        return relay_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """
        Handle Pydantic validation errors with ``{"message": ...}`` responses.

        Returns:
            JSONResponse with 400 status
        """
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            loc = first_error.get("loc", [])
            param = ".".join(str(l) for l in loc if l != "body")
            message = first_error.get("msg", "Validation error")
            if param:
                message = f"{param}: {message}"
        else:
            message = "Request validation failed"

        logger.warning("chat_relay.validation_error", path=request.url.path, message=message)
        return create_error_response(message, status_code=400)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "chat_relay.http_error",
            path=request.url.path,
            status_code=exc.status_code,
            detail=str(exc.detail),
        )
        response = create_error_response(str(exc.detail), status_code=exc.status_code)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the full exception and returns a safe 500 response without
        leaking internal details.
        """
        logger.exception(
            "chat_relay.unhandled_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return internal_error()

    # ------------------------------------------------------------------
    # Request Logging Middleware
    # ------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable):
        """
        Log every request with timing information.

        For streamed responses the duration covers the time to first byte.
        """
        request_id = request.headers.get("X-Request-ID", "-")
        start_time = time.perf_counter()

        # Bind request context for all logs in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
        )

        logger.info("chat_relay.request.start")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "chat_relay.request.complete",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response

    # ------------------------------------------------------------------
    # Routers
    # ------------------------------------------------------------------

    app.include_router(chat.router, tags=["chat"])

    # ------------------------------------------------------------------
    # Health / Internal
    # ------------------------------------------------------------------

    @app.get("/api/ping")
    async def ping():
        return {"message": "pong"}

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for service monitoring.

        Returns:
            dict: Status information including service name and version
        """
        return {
            "status": "ok",
            "service": "chat-relay",
            "version": __version__,
            "in_flight": len(runtime.tasks),
        }

    @app.get("/health/live")
    async def liveness_check():
        return {"status": "alive"}

    @app.get("/internal/metrics")
    async def internal_metrics() -> dict:
        """Relay turn counters snapshot."""
        return {"metrics": get_metric_snapshot()}

    @app.get("/internal/audit")
    async def internal_audit(limit: int = 100) -> dict:
        """Internal audit event buffer snapshot."""
        return {"events": get_audit_events(limit=limit)}

    return app


def _build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    return create_app(settings)


app = _build_default_app()

"""Tails Dashboard - FastAPI app serving the log viewer and its SSE stream."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.types import Receive, Scope, Send

from .. import __version__
from ..config import TailsConfig
from ..exceptions import StreamingUnsupportedError, TailsError
from ..source.runner import SourceRunner
from ..source.tailer import LineSource
from ..streaming.broker import CloseReason, EventBroker
from ..streaming.session import SubscriberSession

logger = logging.getLogger(__name__)

HTML_DIR = Path(__file__).parent / "html"

STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "X-Accel-Buffering": "no",
}


# =============================================================================
# Responses
# =============================================================================


class SessionStreamingResponse(StreamingResponse):
    """Stream a joined SubscriberSession and leave the broker when done.

    The session is closed however the response ends, including when the
    client is gone before the first frame is pulled from the stream.
    """

    def __init__(self, session: SubscriberSession, headers: Optional[Dict[str, str]] = None):
        super().__init__(session.stream(), media_type="text/event-stream", headers=headers)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.session.close(CloseReason.DISCONNECTED)


# =============================================================================
# Module-level Helper Functions
# =============================================================================


def _ensure_streaming_supported(request: Request) -> None:
    """Reject transports that cannot flush an open-ended body incrementally.

    HTTP/1.0 has no chunked transfer coding.
    """
    if request.scope.get("http_version") == "1.0":
        raise StreamingUnsupportedError()


def _static_file(app: FastAPI, name: str) -> FileResponse:
    """Serve one of the viewer files, or 404 if it is missing."""
    file_path = app.state.static_dir / name
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="Not Found")
    return FileResponse(file_path)


async def _tails_error_handler(request: Request, exc: TailsError):  # noqa: ARG001
    if isinstance(exc, StreamingUnsupportedError):
        return PlainTextResponse(exc.message, status_code=exc.status_code)
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


# =============================================================================
# Setup Functions
# =============================================================================


def _create_lifespan():
    """Start the broker and source runner with the app, stop them after."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        broker: EventBroker = app.state.broker
        runner: Optional[SourceRunner] = app.state.runner

        await broker.start()
        if runner is not None:
            runner.start()
        logger.info("Stream created! Server on!")
        try:
            yield
        finally:
            if runner is not None:
                await runner.stop()
            await broker.stop()

    return lifespan


def _setup_rate_limiter(app: FastAPI) -> Limiter:
    """Setup rate limiting."""
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    return limiter


def _setup_app_state(
    app: FastAPI,
    config: TailsConfig,
    broker: EventBroker,
    source: Optional[LineSource]
) -> None:
    """Initialize application state."""
    app.state.config = config
    app.state.broker = broker
    app.state.runner = (
        SourceRunner(source, broker, config.restart_policy()) if source is not None else None
    )
    app.state.static_dir = config.static_dir or HTML_DIR
    app.add_exception_handler(TailsError, _tails_error_handler)


# =============================================================================
# Endpoint Registration Functions
# =============================================================================


def _register_static_endpoints(app: FastAPI) -> None:
    """Register the viewer page and its assets."""

    @app.get("/html/styles.css")
    async def styles():
        return _static_file(app, "styles.css")

    @app.get("/html/app.js")
    async def script():
        return _static_file(app, "app.js")

    @app.get("/")
    async def index():
        """Serve the viewer page."""
        return _static_file(app, "index.html")


def _register_health_endpoints(app: FastAPI) -> None:
    """Register health check and status endpoints."""

    @app.get("/api/health", response_class=JSONResponse)
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": __version__, "streaming": app.state.broker.is_running}

    @app.get("/api/status", response_class=JSONResponse)
    async def status():
        """Broker counters and line source state."""
        config: TailsConfig = app.state.config
        runner: Optional[SourceRunner] = app.state.runner
        return {
            "version": __version__,
            "path": str(config.path) if config.path else None,
            "broker": app.state.broker.stats(),
            "source": runner.status() if runner is not None else None,
        }


def _register_streaming_endpoints(app: FastAPI, limiter: Limiter) -> None:
    """Register the Server-Sent Events endpoint."""

    @app.get("/sse")
    @limiter.limit(lambda: app.state.config.connect_rate_limit)
    async def sse_endpoint(request: Request):
        """Stream every new line of the tailed file as an SSE message."""
        _ensure_streaming_supported(request)
        config: TailsConfig = app.state.config

        session = SubscriberSession(
            app.state.broker,
            heartbeat_interval=config.heartbeat_interval,
            event_name=config.event_name,
            retry_ms=config.retry_ms,
            is_disconnected=request.is_disconnected,
            disconnect_poll_interval=config.disconnect_poll_interval,
        )
        # Join before the 200 goes out so capacity errors map to a status code.
        await session.open()

        return SessionStreamingResponse(session, headers=STREAM_HEADERS)


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    config: Optional[TailsConfig] = None,
    broker: Optional[EventBroker] = None,
    source: Optional[LineSource] = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration. Defaults to TailsConfig().
        broker: Broker to use. Built from config if not provided.
        source: Line source. Built from config.path if not provided; without
            either the app streams only what is published to the broker.

    Returns:
        Configured FastAPI application.
    """
    config = config or TailsConfig()
    broker = broker or config.create_broker()
    if source is None and config.path is not None:
        source = config.create_source()

    app = FastAPI(
        title="Tails",
        description="Serve a tailed log file over Server-Sent Events",
        version=__version__,
        lifespan=_create_lifespan()
    )

    limiter = _setup_rate_limiter(app)
    _setup_app_state(app, config, broker, source)

    _register_health_endpoints(app)
    _register_streaming_endpoints(app, limiter)
    _register_static_endpoints(app)

    return app


# =============================================================================
# Server Runner
# =============================================================================


def run_server(config: TailsConfig) -> None:
    """Run the server until interrupted.

    Args:
        config: Server configuration, including host and port.
    """
    import uvicorn

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info"
    )

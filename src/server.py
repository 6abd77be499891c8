"""FastAPI server exposing process health to uptime monitors."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .models import SessionState

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, slow_threshold: float = 1.0):
        super().__init__(app)
        self.slow_threshold = slow_threshold

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start
        if elapsed > self.slow_threshold:
            logger.warning(f"SLOW REQUEST: {request.method} {request.url.path} took {elapsed:.2f}s")
        return response


class StatusResponse(BaseModel):
    """Liveness response for uptime monitors."""
    status: str
    timestamp: str


class SessionHealthResponse(BaseModel):
    """Session-level health details."""
    status: Literal["healthy", "degraded", "unhealthy"]
    session: Dict[str, Any]
    watchdog_running: bool
    heartbeat_running: bool
    timestamp: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(supervisor=None, watchdog=None, heartbeat=None, config: Optional[dict] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        supervisor: SessionSupervisor whose state is reported
        watchdog: HealthWatchdog instance
        heartbeat: HeartbeatEmitter instance
        config: Configuration dictionary

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Session Keeper",
        description="Health endpoints for the chat session keeper",
        version="0.1.0",
    )

    config = config or {}
    app.add_middleware(
        RequestTimingMiddleware,
        slow_threshold=config.get("server", {}).get("slow_request_threshold_seconds", 1.0),
    )

    app.state.supervisor = supervisor
    app.state.watchdog = watchdog
    app.state.heartbeat = heartbeat

    @app.get("/", response_model=StatusResponse)
    async def root():
        """Health check endpoint."""
        return StatusResponse(status="healthy", timestamp=_now())

    @app.get("/health", response_model=SessionHealthResponse)
    async def health():
        """
        Session health.

        healthy: connected; degraded: pairing, reconnecting or rebuilding;
        unhealthy (HTTP 503): failed or no supervisor.
        """
        supervisor = app.state.supervisor
        session = supervisor.snapshot() if supervisor else {"state": None}
        state = supervisor.state if supervisor else None

        if state is SessionState.CONNECTED:
            overall = "healthy"
        elif state is None or state is SessionState.FAILED:
            overall = "unhealthy"
        else:
            overall = "degraded"

        body = SessionHealthResponse(
            status=overall,
            session=session,
            watchdog_running=bool(app.state.watchdog and app.state.watchdog.running),
            heartbeat_running=bool(app.state.heartbeat and app.state.heartbeat.running),
            timestamp=_now(),
        )
        status_code = 503 if overall == "unhealthy" else 200
        return JSONResponse(status_code=status_code, content=body.model_dump())

    return app

"""Embedded HTTP server for health checks and queue inspection.

Runs uvicorn inside the relay's own event loop so route handlers can read
relay state directly.

Routes:
    GET /health  -> "ok" (liveness only)
    GET /status  -> connection state, presence count, queue depth
    GET /queue   -> queued events; needs the inspection token
"""

import asyncio
import logging
import secrets
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from . import __version__
from .relay import PresenceRelay

logger = logging.getLogger(__name__)


class QueuedEvent(BaseModel):
    """One event as shown by the inspection route."""
    identifier: str
    kind: str
    timestamp: str
    identityName: Optional[str] = None
    userId: Optional[str] = None


class QueueResponse(BaseModel):
    events: list[QueuedEvent] = Field(default_factory=list)


def _request_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):]
    return request.query_params.get("token", "")


def create_app(relay: PresenceRelay, inspect_token: str = "") -> FastAPI:
    app = FastAPI(title="Presence Relay", version=__version__)

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "ok"

    @app.get("/status")
    async def status():
        return relay.status()

    @app.get("/queue", response_model=QueueResponse, response_model_exclude_none=True)
    async def queue(request: Request):
        token = _request_token(request)
        # An unset inspection token disables the route entirely
        if not inspect_token or not secrets.compare_digest(token.encode(), inspect_token.encode()):
            return JSONResponse(status_code=403, content={"error": "Forbidden"})
        return QueueResponse(events=[QueuedEvent(**e.to_dict()) for e in relay.queued_events()])

    return app


class RelayHTTPServer:
    """uvicorn server running as a task on the current event loop."""

    def __init__(
        self,
        relay: PresenceRelay,
        host: str = "127.0.0.1",
        port: int = 8090,
        inspect_token: str = "",
    ):
        self.relay = relay
        self.host = host
        self.port = port
        self.app = create_app(relay, inspect_token)
        self._server: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        import uvicorn

        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        # The CLI owns signal handling
        self._server.install_signal_handlers = lambda: None
        self._task = asyncio.create_task(self._server.serve())
        logger.info("HTTP server listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                self._task.cancel()
            except Exception as e:
                logger.debug("HTTP server stopped with error: %s", e)
            self._task = None

"""
dashboard/main.py

Dashboard FastAPI app, served over TLS by serve.py

Routes:
  WS  /dashboard  — endless stream of random 3D points, one JSON text frame each:
                    {"x": 0.123456, "y": -0.654321, "z": 0.000042}
  ANY /dashboard  — without websocket upgrade headers (any method): 400, no stream
  WS  /*          — closed with 1008, no stream
  ANY /*          — static files from settings.static_dir (index.html for directories)

Local development without TLS:
    uvicorn dashboard.main:app --reload
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from dashboard.config import Settings
from dashboard.stream import StreamRegistry, stream_points

logger = logging.getLogger(__name__)

DASHBOARD_PATH = "/dashboard"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the app for one server instance.

    The stream registry lives on app.state.streams so the server can stop
    every live stream on shutdown.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Dashboard",
        description="Static dashboard client plus a websocket feed of random points in the unit ball.",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.streams  = StreamRegistry()

    @app.websocket(DASHBOARD_PATH)
    async def dashboard(websocket: WebSocket):
        await stream_points(websocket, app.state.streams, interval=settings.stream_interval)

    @app.websocket("/{path:path}")
    async def no_stream_here(websocket: WebSocket, path: str):
        logger.warning("websocket request for /%s refused: only %s streams", path, DASHBOARD_PATH)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)

    @app.middleware("http")
    async def dashboard_without_upgrade(request: Request, call_next):
        """A plain request of any method cannot be switched to a stream; reject it."""
        if request.url.path != DASHBOARD_PATH:
            return await call_next(request)
        client = request.client.host if request.client else "unknown"
        logger.warning(
            "websocket upgrade failed: %s %s from %s is not a websocket handshake",
            request.method, request.url.path, client,
        )
        return PlainTextResponse("Bad Request\n", status_code=400)

    static_root = Path(settings.static_dir)
    if not static_root.is_dir():
        logger.warning("Static root %s does not exist; file requests will fail", static_root.resolve())
    app.mount("/", StaticFiles(directory=static_root, html=True, check_dir=False), name="static")

    return app


app = create_app()

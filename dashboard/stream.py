"""
dashboard/stream.py

Websocket push loop for GET /dashboard.

One stream per connection:
  accept → register stop event → send points until stopped → release

A stream stops when
  - a send fails (peer gone, socket closed under us),
  - the client disconnects (noticed by the watcher task), or
  - the server is shutting down (StreamRegistry.stop_all).

Client frames are read only to notice the disconnect; their content is ignored.
"""

import asyncio
import logging
import random

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from dashboard.points import random_point

logger = logging.getLogger(__name__)


class StreamRegistry:
    """Live /dashboard streams, keyed by their stop events."""

    def __init__(self) -> None:
        self._streams: set[asyncio.Event] = set()
        self._closing = False

    @property
    def active(self) -> int:
        return len(self._streams)

    def open(self) -> asyncio.Event:
        stop = asyncio.Event()
        if self._closing:
            stop.set()
        self._streams.add(stop)
        return stop

    def release(self, stop: asyncio.Event) -> None:
        self._streams.discard(stop)

    def stop_all(self) -> None:
        """Ask every live stream to finish; streams opened afterwards stop immediately."""
        self._closing = True
        for stop in list(self._streams):
            stop.set()


async def _watch_disconnect(websocket: WebSocket, stop: asyncio.Event) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("client closed stream (code=%s)", message.get("code"))
                return
    finally:
        stop.set()


def _peer(websocket: WebSocket) -> str:
    client = websocket.client
    return f"{client.host}:{client.port}" if client else "unknown"


async def stream_points(
    websocket: WebSocket,
    registry: StreamRegistry,
    interval: float = 0.0,
) -> int:
    """
    Push random points to one websocket until the stream is stopped.

    Args:
        websocket: the not-yet-accepted /dashboard connection
        registry:  live-stream registry (shutdown + accounting)
        interval:  pause between points in seconds; 0.0 still yields to the
                   event loop after every send

    Returns:
        number of points sent
    """
    peer = _peer(websocket)
    try:
        await websocket.accept()
    except (RuntimeError, OSError) as e:
        logger.error("websocket upgrade failed for %s: %s", peer, e)
        return 0

    logger.info("connected: %s", peer)
    stop    = registry.open()
    rng     = random.Random()
    watcher = asyncio.create_task(_watch_disconnect(websocket, stop))
    sent    = 0
    try:
        while not stop.is_set():
            try:
                await websocket.send_text(random_point(rng).to_message())
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.warning("send to %s failed after %d points: %r", peer, sent, e)
                break
            sent += 1
            await asyncio.sleep(interval)
    finally:
        # Release before awaiting anything: the task may already be cancelled.
        registry.release(stop)
        watcher.cancel()
        logger.info("disconnected: %s (%d points sent)", peer, sent)
        (outcome,) = await asyncio.gather(watcher, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.debug("receive from %s failed: %r", peer, outcome)
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await websocket.close()
            except (RuntimeError, OSError) as e:
                logger.debug("close for %s failed: %s", peer, e)
    return sent

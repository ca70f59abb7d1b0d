"""
Server-Sent Events channel handle for one MCP session.

The channel owns the outbound side of a session: frames are queued by
``send()`` and drained by the ``events()`` generator that backs the
StreamingResponse of GET /sse. Closing the channel ends the stream and
notifies every close subscriber exactly once.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from mcp import types

from .errors import HandshakeError

logger = logging.getLogger("osm_mcp_server.channel")

CloseCallback = Callable[["SseChannel"], None]


def format_sse(event: str, data: str) -> str:
    """Encode one SSE event. Multi-line data is split into several data fields."""
    lines = [f"event: {event}"]
    lines.extend(f"data: {line}" for line in data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


KEEPALIVE_FRAME = ": keepalive\n\n"


class SseChannel:
    def __init__(self, session_id: str, endpoint: str, keepalive_seconds: float = 15.0) -> None:
        self.session_id = session_id
        self.endpoint = endpoint
        self.keepalive_seconds = keepalive_seconds
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._started = False
        self._closed = False
        self._close_callbacks: List[CloseCallback] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def started(self) -> bool:
        return self._started

    def on_close(self, callback: CloseCallback) -> None:
        """Subscribe to the close event. Subscribing after close fires immediately."""
        if self._closed:
            callback(self)
            return
        self._close_callbacks.append(callback)

    async def start(self) -> None:
        """Announce the message endpoint to the client (the `endpoint` event)."""
        if self._closed:
            raise HandshakeError(f"Channel {self.session_id} closed before handshake")
        if self._started:
            raise HandshakeError(f"Channel {self.session_id} already started")
        self._started = True
        self._queue.put_nowait(format_sse("endpoint", self.endpoint))

    async def send(self, message: types.JSONRPCMessage) -> bool:
        """Queue a JSON-RPC message for the client. Returns False if the channel is gone."""
        if self._closed:
            logger.warning(
                "Dropping message for closed channel",
                extra={"session_id": self.session_id},
            )
            return False
        data = message.model_dump_json(by_alias=True, exclude_none=True)
        self._queue.put_nowait(format_sse("message", data))
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(
                    "Close subscriber failed",
                    extra={"session_id": self.session_id},
                )

    async def events(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Yield encoded SSE frames until the channel closes or the client goes away."""
        try:
            while True:
                try:
                    frame = await asyncio.wait_for(self._queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.info("Client disconnected", extra={"session_id": self.session_id})
                        break
                    yield KEEPALIVE_FRAME
                    continue
                if frame is None:
                    break
                yield frame
        finally:
            self.close()

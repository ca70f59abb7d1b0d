"""
Session lifecycle for the MCP SSE transport.

- SessionRegistry: session id -> Session, the only record of which sessions are alive
- SessionManager.establish: mint an id, build channel + processor, register, handshake
- SessionManager.route: deliver a POSTed frame to its session, one frame at a time
- SessionManager._evict: close subscriber that drops the session from the registry
  and winds down its MCP server task
- SessionManager.shutdown: close everything, bounded drain, then cancel

Invariants:
    - A session is registered before its handshake and removed if the handshake fails
    - Eviction happens synchronously inside channel.close(); no stale window
    - Frames for one session are processed in arrival order (per-session lock)
    - Closing a channel does not cancel the frame in flight; its reply is dropped
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Union

from .channel import SseChannel
from .errors import DuplicateSessionError, HandshakeError, SessionNotFoundError
from .observability import SessionMetrics
from .processor import CommandProcessor, SendFunc

logger = logging.getLogger("osm_mcp_server.sessions")

ProcessorFactory = Callable[[str, SendFunc], CommandProcessor]


@dataclass
class Session:
    session_id: str
    channel: SseChannel
    processor: CommandProcessor
    dispatch_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def register(self, session: Session) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise DuplicateSessionError(session.session_id)
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionManager:
    def __init__(
        self,
        registry: SessionRegistry,
        processor_factory: ProcessorFactory,
        message_path: str = "/messages",
        keepalive_seconds: float = 15.0,
        metrics: Optional[SessionMetrics] = None,
    ) -> None:
        self.registry = registry
        self.message_path = message_path
        self.keepalive_seconds = keepalive_seconds
        self.metrics = metrics
        self._processor_factory = processor_factory
        self._stopping: Set[asyncio.Task] = set()

    async def establish(self) -> Session:
        session_id = uuid.uuid4().hex
        channel = SseChannel(
            session_id,
            endpoint=f"{self.message_path}?sessionId={session_id}",
            keepalive_seconds=self.keepalive_seconds,
        )
        processor = self._processor_factory(session_id, channel.send)
        session = Session(session_id=session_id, channel=channel, processor=processor)
        self.registry.register(session)

        try:
            await channel.start()
        except Exception as exc:
            self.registry.remove(session_id)
            channel.close()
            logger.error(f"Handshake failed: {exc}", extra={"session_id": session_id})
            if isinstance(exc, HandshakeError):
                raise
            raise HandshakeError(str(exc)) from exc

        await processor.start()
        channel.on_close(self._evict)
        if self.metrics is not None:
            self.metrics.session_opened()
            channel.on_close(self.metrics.session_closed)

        logger.info(
            f"Session established with tools {processor.tool_names()}",
            extra={"session_id": session_id},
        )
        return session

    async def route(self, session_id: Optional[str], payload: Union[bytes, str]) -> None:
        session = self.registry.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFoundError(session_id)

        async with session.dispatch_lock:
            # Closed while waiting behind an earlier frame
            if session.channel.closed:
                raise SessionNotFoundError(session_id)
            await session.processor.handle_message(payload)

    def _evict(self, channel: SseChannel) -> None:
        session = self.registry.remove(channel.session_id)
        if session is None:
            return
        logger.info("Session removed", extra={"session_id": channel.session_id})
        task = asyncio.get_running_loop().create_task(self._stop(session))
        self._stopping.add(task)
        task.add_done_callback(self._stopping.discard)

    async def _stop(self, session: Session) -> None:
        # A frame already being processed finishes first; its reply is dropped
        try:
            async with session.dispatch_lock:
                await session.processor.aclose()
        except asyncio.CancelledError:
            session.processor.cancel()
            raise

    def close_all(self) -> int:
        sessions = self.registry.sessions()
        for session in sessions:
            session.channel.close()
        return len(sessions)

    async def shutdown(self, timeout: float = 5.0) -> int:
        """Close every session, give in-flight frames ``timeout`` seconds, then cancel."""
        closed = self.close_all()
        if self._stopping:
            _, pending = await asyncio.wait(set(self._stopping), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)
        return closed

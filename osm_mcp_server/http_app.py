"""
FastAPI/ASGI app for the OpenStreetMap MCP server.

- GET /health: liveness, plain "OK"
- GET /sse: opens an MCP session and streams its frames as Server-Sent Events
- POST /messages?sessionId=<id>: delivers one JSON-RPC frame to that session
- GET /metrics: Prometheus text for sessions and tool calls
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx
from fastapi import FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from mcp import types
from starlette.types import Receive, Scope, Send

from .channel import SseChannel
from .config import Settings, load_settings
from .errors import MCPServerError, SessionNotFoundError
from .geocoding import CircuitBreaker, NominatimClient
from .observability import InMemoryMetrics, SessionMetrics, format_prometheus, setup_logger
from .openstreetmap_tools import Geocoder, build_openstreetmap_tool
from .processor import CommandProcessor, SendFunc
from .sessions import ProcessorFactory, SessionManager, SessionRegistry

logger = logging.getLogger("osm_mcp_server.http_app")

# Keep proxies (nginx) and browsers from buffering the event stream
_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SseResponse(StreamingResponse):
    """Event stream of one channel. The channel is closed when the response ends, however it ends."""

    def __init__(
        self,
        channel: SseChannel,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        super().__init__(
            channel.events(is_disconnected),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )
        self.channel = channel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # The body generator may never have started (disconnect during response start)
            self.channel.close()


def build_processor_factory(
    settings: Settings,
    geocoder: Geocoder,
    metrics: Optional[InMemoryMetrics] = None,
) -> ProcessorFactory:
    """Every session gets its own processor with exactly one tool registered."""
    server_info = types.Implementation(name=settings.name, version=settings.version)

    def factory(session_id: str, send: SendFunc) -> CommandProcessor:
        tool = build_openstreetmap_tool(geocoder, metrics)
        return CommandProcessor(server_info, [tool], send, session_id=session_id)

    return factory


def build_nominatim_client(settings: Settings, http_client: httpx.AsyncClient) -> NominatimClient:
    geo = settings.geocoding
    return NominatimClient(
        http_client,
        base_url=geo.base_url,
        user_agent=geo.user_agent,
        timeout=geo.timeout_seconds,
        retries=geo.retries,
        circuit_breaker=CircuitBreaker(
            failure_threshold=geo.circuit_failure_threshold,
            recovery_timeout=geo.circuit_recovery_timeout,
        ),
    )


def _session_manager(request: Request) -> SessionManager:
    manager = getattr(request.app.state, "sessions", None)
    if manager is None:
        raise RuntimeError("Session manager not initialized (app lifespan not run)")
    return manager


def create_app(
    settings: Optional[Settings] = None,
    geocoder: Optional[Geocoder] = None,
    session_manager: Optional[SessionManager] = None,
    tool_metrics: Optional[InMemoryMetrics] = None,
    session_metrics: Optional[SessionMetrics] = None,
) -> FastAPI:
    """
    Build the app.

    Collaborators default to the real ones, built in the lifespan:
    a pooled httpx client, a NominatimClient and a SessionManager with a fresh
    registry. Tests inject ``session_manager`` (or ``geocoder``) instead.
    """
    settings = settings or load_settings()
    tool_metrics = tool_metrics or InMemoryMetrics()
    session_metrics = session_metrics or SessionMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logger(settings.log_level)
        http_client: Optional[httpx.AsyncClient] = None

        if app.state.sessions is None:
            geo = geocoder
            if geo is None:
                http_client = httpx.AsyncClient(
                    limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                    timeout=httpx.Timeout(settings.geocoding.timeout_seconds, connect=5.0),
                    follow_redirects=False,
                )
                geo = build_nominatim_client(settings, http_client)
            app.state.sessions = SessionManager(
                SessionRegistry(),
                build_processor_factory(settings, geo, tool_metrics),
                message_path=settings.message_path,
                keepalive_seconds=settings.keepalive_seconds,
                metrics=session_metrics,
            )

        logger.info(f"{settings.name} {settings.version} ready")
        try:
            yield
        finally:
            closed = await app.state.sessions.shutdown(settings.graceful_shutdown_seconds)
            if closed:
                logger.info(f"Force-closed {closed} open session(s) on shutdown")
            if http_client is not None:
                await http_client.aclose()

    app = FastAPI(
        title="OpenStreetMap MCP Server",
        description="MCP tool server for OpenStreetMap (Nominatim) geocoding over SSE",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sessions = session_manager
    app.state.tool_metrics = tool_metrics
    app.state.session_metrics = session_metrics

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        """Healthcheck endpoint."""
        return "OK"

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus-compatible metrics endpoint."""
        content = format_prometheus(app.state.session_metrics, app.state.tool_metrics)
        return Response(content=content, media_type="text/plain; version=0.0.4")

    @app.get("/sse")
    async def sse(request: Request) -> Response:
        manager = _session_manager(request)
        try:
            session = await manager.establish()
        except MCPServerError as exc:
            logger.error(f"Could not establish SSE session: {exc}")
            return PlainTextResponse(
                "Failed to establish session",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        try:
            return SseResponse(session.channel, request.is_disconnected)
        except Exception:
            session.channel.close()
            raise

    @app.post(settings.message_path)
    async def messages(
        request: Request,
        session_id: Optional[str] = Query(default=None, alias="sessionId"),
    ) -> Response:
        manager = _session_manager(request)
        payload = await request.body()

        try:
            await manager.route(session_id, payload)
        except SessionNotFoundError:
            logger.warning("No active session for posted message", extra={"session_id": session_id or ""})
            return PlainTextResponse(
                "Session not found or inactive",
                status_code=status.HTTP_404_NOT_FOUND,
            )
        except Exception as exc:
            logger.error(
                f"Error handling message: {exc}",
                extra={"session_id": session_id or ""},
                exc_info=True,
            )
            return PlainTextResponse(
                "Error processing message",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return PlainTextResponse("OK")

    return app

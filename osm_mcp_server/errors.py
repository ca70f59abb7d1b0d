from __future__ import annotations


class MCPError(Exception):
    """Base exception for all MCP server errors."""
    pass


class MCPClientError(MCPError):
    """Client-side errors (4xx) - bad session ids, malformed frames."""
    pass


class MCPServerError(MCPError):
    """Server-side errors (5xx) - internal issues."""
    pass


class SessionNotFoundError(MCPClientError):
    """No live session is registered under the given id."""

    def __init__(self, session_id: str | None):
        self.session_id = session_id
        super().__init__(f"Session not found or inactive: {session_id!r}")


class MessageDecodeError(MCPClientError):
    """Payload is not a valid JSON-RPC message."""
    pass


class DuplicateSessionError(MCPServerError):
    """A session with this id is already registered."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already registered: {session_id}")


class HandshakeError(MCPServerError):
    """The SSE channel could not be started for a new session."""
    pass


class GeocodingError(MCPServerError):
    """Upstream geocoding service errors."""
    pass


class CircuitBreakerError(GeocodingError):
    """Circuit breaker is open - service temporarily unavailable."""
    def __init__(self, service: str, reset_after: float):
        self.service = service
        self.reset_after = reset_after
        super().__init__(f"Circuit breaker open for {service}, retry after {reset_after:.1f}s")

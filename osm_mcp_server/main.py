"""
Main entry point for the OpenStreetMap MCP server.

Shutdown: uvicorn stops accepting connections on SIGINT/SIGTERM, gives open
SSE streams ``graceful_shutdown_seconds`` to finish, then cancels them; the
app lifespan force-closes whatever sessions remain.
"""
from __future__ import annotations

import sys

import uvicorn

from .config import load_settings
from .http_app import create_app


def main() -> None:
    """Start the MCP server."""
    try:
        settings = load_settings()
        app = create_app(settings)

        print(f"OpenStreetMap MCP Server listening on http://{settings.host}:{settings.port}")
        print(f"Health check: http://{settings.host}:{settings.port}/health")
        print(f"SSE endpoint: http://{settings.host}:{settings.port}/sse")

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            server_header=False,
            timeout_graceful_shutdown=int(settings.graceful_shutdown_seconds),
        )
    except KeyboardInterrupt:
        print("\nServer shutdown requested...")
        sys.exit(0)
    except Exception as e:
        print(f"Failed to start MCP server: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

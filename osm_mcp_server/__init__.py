"""
OpenStreetMap MCP Server.

Exposes the Nominatim geocoding search as the MCP tool ``query_openstreetmap``
over the HTTP+SSE transport (GET /sse + POST /messages).
"""

__version__ = "1.0.0"

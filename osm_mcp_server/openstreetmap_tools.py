from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from mcp import types

from .geocoding import FAILURE_PREFIX, LookupFailed, LookupResult, to_envelope
from .observability import InMemoryMetrics
from .processor import RegisteredTool

logger = logging.getLogger("osm_mcp_server.tools")

TOOL_NAME = "query_openstreetmap"
TOOL_DESCRIPTION = (
    "Look up a place name, address, or landmark on OpenStreetMap (Nominatim) and "
    "return its coordinates, full display name, and address components."
)
INPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "minLength": 1,
            "description": "The place name, address, or landmark to search for.",
        },
    },
    "required": ["query"],
}
EMPTY_QUERY_ERROR = "Query parameter cannot be empty."


class Geocoder(Protocol):
    async def lookup(self, query: str) -> LookupResult:
        ...


async def query_openstreetmap(geocoder: Geocoder, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Run one lookup and return the result envelope. Never raises."""
    query = arguments.get("query")
    if not isinstance(query, str) or not query.strip():
        logger.warning("Empty query received", extra={"tool": TOOL_NAME})
        raw = query if isinstance(query, str) else ""
        return to_envelope(LookupFailed(query=raw, error=EMPTY_QUERY_ERROR))

    try:
        result = await geocoder.lookup(query)
        return to_envelope(result)
    except Exception as exc:
        logger.error(
            f"Geocoder raised for query {query!r}: {exc}",
            extra={"tool": TOOL_NAME},
            exc_info=True,
        )
        message = str(exc) or type(exc).__name__
        return to_envelope(LookupFailed(query=query, error=f"{FAILURE_PREFIX}: {message}"))


def build_openstreetmap_tool(
    geocoder: Geocoder,
    metrics: Optional[InMemoryMetrics] = None,
) -> RegisteredTool:
    async def handler(arguments: Dict[str, Any]) -> List[types.TextContent]:
        start = time.perf_counter()
        envelope = await query_openstreetmap(geocoder, arguments)
        duration_ms = (time.perf_counter() - start) * 1000.0
        if metrics is not None:
            metrics.record(TOOL_NAME, duration_ms, error="error" in envelope)
        logger.info(
            "Tool call finished",
            extra={"tool": TOOL_NAME, "duration_ms": round(duration_ms, 1)},
        )
        return [types.TextContent(type="text", text=json.dumps(envelope))]

    return RegisteredTool(
        name=TOOL_NAME,
        description=TOOL_DESCRIPTION,
        input_schema=INPUT_SCHEMA,
        handler=handler,
    )

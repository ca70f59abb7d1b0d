from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any, Dict

from mcp import ClientSession
from mcp.client.sse import sse_client


SERVER_URL = os.getenv("SERVER_URL", "http://localhost:3000")
SSE_URL = f"{SERVER_URL.rstrip('/')}/sse"


async def main() -> None:
    tool_name = sys.argv[1] if len(sys.argv) > 1 else "query_openstreetmap"
    raw_args = sys.argv[2] if len(sys.argv) > 2 else '{"query": "Eiffel Tower, Paris"}'

    try:
        params: Dict[str, Any] = json.loads(raw_args)
    except Exception as exc:
        print("Usage: python scripts/call_tool.py [tool_name] ['<json-args>']")
        print(f"Failed to parse JSON arguments: {exc!r}")
        raise SystemExit(1)

    print(f"Connecting to MCP server at {SSE_URL}...")
    async with sse_client(SSE_URL) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            print(f"Calling {tool_name} with {params}")
            try:
                result = await session.call_tool(tool_name, params)
            except Exception as exc:
                print("Tool call failed:")
                print(repr(exc))
                raise SystemExit(1)

            for block in result.content:
                if block.type != "text":
                    print(block)
                    continue
                try:
                    print(json.dumps(json.loads(block.text), indent=2, ensure_ascii=False))
                except ValueError:
                    print(block.text)


if __name__ == "__main__":
    asyncio.run(main())

from __future__ import annotations

import asyncio
import json
import os

import httpx
from mcp import ClientSession
from mcp.client.sse import sse_client


SERVER_URL = os.getenv("SERVER_URL", "http://localhost:3000").rstrip("/")


async def main() -> None:
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{SERVER_URL}/health")
        print(f"/health -> {response.status_code} {response.text}")

    print(f"Connecting to MCP server at {SERVER_URL}/sse...")
    async with sse_client(f"{SERVER_URL}/sse") as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()

            print("Fetching tool list...")
            tools = await session.list_tools()
            print(f"Found {len(tools.tools)} tools:")
            for tool in tools.tools:
                print(f" - {tool.name}")

            print("Calling query_openstreetmap for health check...")
            try:
                result = await session.call_tool("query_openstreetmap", {"query": "Eiffel Tower, Paris"})
                envelope = json.loads(result.content[0].text)
                print("query_openstreetmap OK" if envelope.get("found") else "query_openstreetmap returned no match")
                print(envelope)
            except Exception as exc:
                print("query_openstreetmap FAILED")
                print(repr(exc))


if __name__ == "__main__":
    asyncio.run(main())

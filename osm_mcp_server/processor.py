"""
Per-session MCP command processor.

Each session runs its own ``mcp.server.lowlevel.Server`` over a pair of anyio
memory streams. ``handle_message`` decodes a posted frame and feeds it to the
server's read stream; everything the server writes is forwarded to the
session's SSE channel. A request is handled to completion, its response
forwarded, before ``handle_message`` returns.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import anyio
from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from .errors import MessageDecodeError

logger = logging.getLogger("osm_mcp_server.processor")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[List[types.TextContent]]]
SendFunc = Callable[[types.JSONRPCMessage], Awaitable[bool]]


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler

    def definition(self) -> types.Tool:
        return types.Tool(name=self.name, description=self.description, inputSchema=self.input_schema)


def build_server(server_info: types.Implementation, tools: Sequence[RegisteredTool]) -> Server:
    """MCP server exposing exactly ``tools``."""
    server: Server = Server(server_info.name, version=server_info.version)
    registered = {tool.name: tool for tool in tools}

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return [tool.definition() for tool in registered.values()]

    # Tools validate their own arguments so bad input comes back as a result envelope
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: Dict[str, Any]) -> Union[List[types.TextContent], types.CallToolResult]:
        tool = registered.get(name)
        if tool is None:
            raise ValueError(f"Tool {name} not found")
        try:
            return await tool.handler(dict(arguments or {}))
        except Exception as exc:
            logger.error(f"Tool {name} raised: {exc}", extra={"tool": name}, exc_info=True)
            return types.CallToolResult(
                content=[types.TextContent(type="text", text=f"Error executing tool {name}: {exc}")],
                isError=True,
            )

    return server


class CommandProcessor:
    """Bridges one SSE session to its own MCP server task.

    Use ``start()``/``aclose()`` or ``async with``.
    """

    def __init__(
        self,
        server_info: types.Implementation,
        tools: Sequence[RegisteredTool],
        send: SendFunc,
        session_id: str = "",
    ) -> None:
        self.session_id = session_id
        self.server = build_server(server_info, tools)
        self._tool_names = sorted(tool.name for tool in tools)
        self._send = send
        self._read_writer, self._read_stream = anyio.create_memory_object_stream(0)
        self._write_stream, self._write_reader = anyio.create_memory_object_stream(0)
        self._pending: Dict[types.RequestId, asyncio.Future] = {}
        self._task: Optional[asyncio.Task] = None

    def tool_names(self) -> List[str]:
        return list(self._tool_names)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"Processor for {self.session_id} already started")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def aclose(self) -> None:
        """End the server gracefully: no more input, then wait for it to drain."""
        self._read_writer.close()
        if self._task is not None:
            await self._task

    def cancel(self) -> None:
        self._read_writer.close()
        if self._task is not None:
            self._task.cancel()

    async def __aenter__(self) -> "CommandProcessor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def handle_message(self, payload: Union[bytes, str]) -> None:
        """Decode one JSON-RPC frame and hand it to the server.

        Raises MessageDecodeError if the payload is not a JSON-RPC message.
        Everything after decoding is answered over the channel.
        """
        try:
            message = types.JSONRPCMessage.model_validate_json(payload)
        except ValidationError as exc:
            raise MessageDecodeError(
                f"Invalid JSON-RPC message ({exc.error_count()} validation errors)"
            ) from exc

        if not self.running:
            raise RuntimeError(f"Processor for {self.session_id} is not running")

        root = message.root
        if isinstance(root, (types.JSONRPCResponse, types.JSONRPCError)):
            # The server never issues requests, so there is nothing to match these to
            logger.debug("Ignoring client response frame", extra={"session_id": self.session_id})
            return

        if isinstance(root, types.JSONRPCNotification):
            await self._read_writer.send(SessionMessage(message))
            return

        if root.method == "initialize":
            client = (root.params or {}).get("clientInfo") or {}
            logger.info(
                f"Initialize from {client.get('name', '?')} {client.get('version', '?')}",
                extra={"session_id": self.session_id},
            )

        waiter = asyncio.get_running_loop().create_future()
        self._pending[root.id] = waiter
        try:
            await self._read_writer.send(SessionMessage(message))
            await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._pending.pop(root.id, None)

    async def _run(self) -> None:
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._forward)
                # stateless: requests are served before initialize
                await self.server.run(
                    self._read_stream,
                    self._write_stream,
                    self.server.create_initialization_options(),
                    stateless=True,
                )
        except Exception:
            logger.exception("MCP server task failed", extra={"session_id": self.session_id})
        finally:
            for waiter in self._pending.values():
                if not waiter.done():
                    waiter.set_result(None)
            logger.debug("MCP server task finished", extra={"session_id": self.session_id})

    async def _forward(self) -> None:
        async with self._write_reader:
            async for session_message in self._write_reader:
                message = session_message.message
                await self._send(message)
                root = message.root
                if isinstance(root, (types.JSONRPCResponse, types.JSONRPCError)):
                    waiter = self._pending.get(root.id)
                    if waiter is not None and not waiter.done():
                        waiter.set_result(None)

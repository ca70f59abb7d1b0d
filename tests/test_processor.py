from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from mcp import types

from conftest import initialize_params, rpc
from osm_mcp_server.errors import MessageDecodeError
from osm_mcp_server.processor import CommandProcessor, RegisteredTool


class Outbox:
    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def send(self, message: types.JSONRPCMessage) -> bool:
        self.messages.append(json.loads(message.model_dump_json(by_alias=True, exclude_none=True)))
        return True


async def _echo(arguments: Dict[str, Any]) -> List[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(arguments))]


async def _explode(arguments: Dict[str, Any]) -> List[types.TextContent]:
    raise RuntimeError("kaboom")


def _processor(outbox: Outbox) -> CommandProcessor:
    tools = [
        RegisteredTool("echo", "Echo arguments", {"type": "object"}, _echo),
        RegisteredTool("explode", "Always fails", {"type": "object"}, _explode),
    ]
    return CommandProcessor(
        types.Implementation(name="test-server", version="9.9.9"),
        tools,
        outbox.send,
        session_id="s1",
    )


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest_asyncio.fixture
async def processor(outbox):
    async with _processor(outbox) as processor:
        yield processor


@pytest.mark.asyncio
async def test_initialize_negotiates_supported_version(processor, outbox):
    await processor.handle_message(rpc("initialize", initialize_params("2024-11-05")))

    result = outbox.messages[0]["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"]["name"] == "test-server"
    assert result["serverInfo"]["version"] == "9.9.9"
    assert result["capabilities"]["tools"] == {"listChanged": False}


@pytest.mark.asyncio
async def test_initialize_unknown_version_falls_back_to_latest(processor, outbox):
    await processor.handle_message(rpc("initialize", initialize_params("1999-01-01")))
    assert outbox.messages[0]["result"]["protocolVersion"] == types.LATEST_PROTOCOL_VERSION


@pytest.mark.asyncio
async def test_initialize_with_bad_params(processor, outbox):
    await processor.handle_message(rpc("initialize", {"protocolVersion": "2024-11-05"}))
    assert outbox.messages[0]["error"]["code"] == types.INVALID_PARAMS


@pytest.mark.asyncio
async def test_notifications_have_no_response(processor, outbox):
    await processor.handle_message(rpc("notifications/initialized", id=None))
    await processor.handle_message(rpc("notifications/cancelled", {"requestId": 99}, id=None))
    await processor.handle_message(rpc("ping", id=2))

    assert outbox.messages == [{"jsonrpc": "2.0", "id": 2, "result": {}}]


@pytest.mark.asyncio
async def test_ping(processor, outbox):
    await processor.handle_message(rpc("ping", id=5))
    assert outbox.messages == [{"jsonrpc": "2.0", "id": 5, "result": {}}]


@pytest.mark.asyncio
async def test_tools_list_before_initialize(processor, outbox):
    await processor.handle_message(rpc("tools/list"))
    tools = outbox.messages[0]["result"]["tools"]
    assert [t["name"] for t in tools] == ["echo", "explode"]
    assert tools[0]["inputSchema"] == {"type": "object"}
    assert processor.tool_names() == ["echo", "explode"]


@pytest.mark.asyncio
async def test_full_handshake_then_call(processor, outbox):
    await processor.handle_message(rpc("initialize", initialize_params(), id=1))
    await processor.handle_message(rpc("notifications/initialized", id=None))
    await processor.handle_message(rpc("tools/call", {"name": "echo", "arguments": {"query": "x"}}, id=2))

    assert [m["id"] for m in outbox.messages] == [1, 2]
    assert outbox.messages[1]["result"]["content"] == [{"type": "text", "text": '{"query": "x"}'}]


@pytest.mark.asyncio
async def test_tools_call(processor, outbox):
    await processor.handle_message(rpc("tools/call", {"name": "echo", "arguments": {"query": "x"}}))
    result = outbox.messages[0]["result"]
    assert result["isError"] is False
    assert result["content"] == [{"type": "text", "text": '{"query": "x"}'}]


@pytest.mark.asyncio
async def test_tools_call_without_arguments(processor, outbox):
    await processor.handle_message(rpc("tools/call", {"name": "echo"}))
    assert outbox.messages[0]["result"]["content"][0]["text"] == "{}"


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result(processor, outbox):
    await processor.handle_message(rpc("tools/call", {"name": "explode", "arguments": {}}))
    result = outbox.messages[0]["result"]
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Error executing tool explode: kaboom"


@pytest.mark.asyncio
async def test_unknown_tool(processor, outbox):
    await processor.handle_message(rpc("tools/call", {"name": "nope", "arguments": {}}))
    result = outbox.messages[0]["result"]
    assert result["isError"] is True
    assert "nope" in result["content"][0]["text"]


@pytest.mark.asyncio
async def test_tools_call_missing_name(processor, outbox):
    await processor.handle_message(rpc("tools/call", {"arguments": {}}))
    assert outbox.messages[0]["error"]["code"] == types.INVALID_PARAMS


@pytest.mark.asyncio
async def test_unsupported_method(processor, outbox):
    await processor.handle_message(rpc("resources/list", id=3))
    assert outbox.messages[0]["id"] == 3
    assert outbox.messages[0]["error"]["code"] == types.METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_method(processor, outbox):
    await processor.handle_message(rpc("no/such/method", id=4))
    assert outbox.messages[0]["id"] == 4
    assert "error" in outbox.messages[0]


@pytest.mark.asyncio
async def test_client_response_frames_are_dropped(processor, outbox):
    await processor.handle_message(json.dumps({"jsonrpc": "2.0", "id": 1, "result": {}}))
    await processor.handle_message(rpc("ping", id=2))
    assert [m["id"] for m in outbox.messages] == [2]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [b"", b"{not json", b"[]", b'{"foo": 1}', b'"just a string"'],
)
async def test_undecodable_payload_raises(processor, outbox, payload):
    with pytest.raises(MessageDecodeError):
        await processor.handle_message(payload)
    assert outbox.messages == []


@pytest.mark.asyncio
async def test_not_started(outbox):
    processor = _processor(outbox)
    assert processor.running is False
    with pytest.raises(RuntimeError):
        await processor.handle_message(rpc("ping"))


@pytest.mark.asyncio
async def test_aclose_stops_server(outbox):
    processor = _processor(outbox)
    await processor.start()
    assert processor.running is True

    await processor.aclose()

    assert processor.running is False
    with pytest.raises(RuntimeError):
        await processor.handle_message(rpc("ping"))

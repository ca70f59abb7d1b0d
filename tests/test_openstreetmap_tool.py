"""
Tests for the query_openstreetmap tool handler.

The tool must never raise: empty queries and collaborator failures come back
as failure envelopes inside a normal text content block.
"""
from __future__ import annotations

import json

import httpx
import pytest

from conftest import FakeGeocoder
from osm_mcp_server.geocoding import LocationNotFound, LookupFailed
from osm_mcp_server.observability import InMemoryMetrics
from osm_mcp_server.openstreetmap_tools import (
    EMPTY_QUERY_ERROR,
    INPUT_SCHEMA,
    TOOL_NAME,
    build_openstreetmap_tool,
    query_openstreetmap,
)


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments", [{"query": ""}, {"query": "   "}, {"query": "\t\n"}, {}, {"query": None}, {"query": 42}])
async def test_empty_query_short_circuits(arguments):
    geocoder = FakeGeocoder()

    envelope = await query_openstreetmap(geocoder, arguments)

    assert envelope["found"] is False
    assert envelope["error"] == EMPTY_QUERY_ERROR
    assert geocoder.queries == []


@pytest.mark.asyncio
async def test_success_envelope():
    envelope = await query_openstreetmap(FakeGeocoder(), {"query": "Eiffel Tower, Paris"})

    assert envelope["query"] == "Eiffel Tower, Paris"
    assert envelope["found"] is True
    assert "Eiffel Tower" in envelope["display_name"]
    assert envelope["latitude"] == pytest.approx(48.858, abs=0.01)
    assert envelope["longitude"] == pytest.approx(2.294, abs=0.01)
    assert envelope["osm_type"] == "way"
    assert envelope["class"] == "man_made"
    assert envelope["type"] == "tower"
    assert envelope["address_details"]["city"] == "Paris"


@pytest.mark.asyncio
async def test_query_passed_through_raw():
    geocoder = FakeGeocoder()
    await query_openstreetmap(geocoder, {"query": "  Berlin  "})
    assert geocoder.queries == ["  Berlin  "]


@pytest.mark.asyncio
async def test_not_found_and_failure_results_pass_through():
    geocoder = FakeGeocoder([
        LocationNotFound("Atlantis", 'Could not find location information for "Atlantis".'),
        LookupFailed("Paris", "Failed to query OpenStreetMap: Nominatim API request failed with status 503: Service Unavailable"),
    ])

    missing = await query_openstreetmap(geocoder, {"query": "Atlantis"})
    failed = await query_openstreetmap(geocoder, {"query": "Paris"})

    assert missing == {
        "query": "Atlantis",
        "found": False,
        "message": 'Could not find location information for "Atlantis".',
    }
    assert failed["found"] is False
    assert "503" in failed["error"]


@pytest.mark.asyncio
async def test_collaborator_exception_is_contained():
    geocoder = FakeGeocoder([httpx.ConnectError("connection refused"), RuntimeError("")])

    first = await query_openstreetmap(geocoder, {"query": "Paris"})
    second = await query_openstreetmap(geocoder, {"query": "Paris"})
    third = await query_openstreetmap(geocoder, {"query": "Paris"})

    assert first == {"query": "Paris", "found": False, "error": "Failed to query OpenStreetMap: connection refused"}
    assert second["error"] == "Failed to query OpenStreetMap: RuntimeError"
    assert third["found"] is True


@pytest.mark.asyncio
async def test_identical_queries_give_identical_envelopes():
    geocoder = FakeGeocoder()
    first = await query_openstreetmap(geocoder, {"query": "Eiffel Tower, Paris"})
    second = await query_openstreetmap(geocoder, {"query": "Eiffel Tower, Paris"})
    assert first == second


@pytest.mark.asyncio
async def test_registered_tool_wraps_envelope_in_text_block():
    metrics = InMemoryMetrics()
    tool = build_openstreetmap_tool(FakeGeocoder([RuntimeError("boom")]), metrics)

    assert tool.name == TOOL_NAME
    assert tool.input_schema == INPUT_SCHEMA
    assert tool.definition().inputSchema["required"] == ["query"]

    failed = await tool.handler({"query": "Paris"})
    succeeded = await tool.handler({"query": "Paris"})

    assert len(failed) == 1 and failed[0].type == "text"
    assert json.loads(failed[0].text)["error"] == "Failed to query OpenStreetMap: boom"
    assert json.loads(succeeded[0].text)["found"] is True

    snapshot = metrics.snapshot()[TOOL_NAME]
    assert snapshot["calls"] == 2.0
    assert snapshot["errors"] == 1.0

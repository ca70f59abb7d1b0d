from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from osm_mcp_server.config import Settings
from osm_mcp_server.geocoding import LookupResult, parse_search_results
from osm_mcp_server.http_app import build_processor_factory
from osm_mcp_server.observability import InMemoryMetrics, SessionMetrics
from osm_mcp_server.sessions import SessionManager, SessionRegistry


EIFFEL_TOWER: Dict[str, Any] = {
    "place_id": 82172291,
    "licence": "Data © OpenStreetMap contributors, ODbL 1.0. http://osm.org/copyright",
    "osm_type": "way",
    "osm_id": 5013364,
    "lat": "48.8582599",
    "lon": "2.2945006",
    "class": "man_made",
    "type": "tower",
    "place_rank": 30,
    "importance": 0.6205937724353116,
    "addresstype": "man_made",
    "name": "Eiffel Tower",
    "display_name": (
        "Eiffel Tower, 5, Avenue Anatole France, Quartier du Gros-Caillou, "
        "Paris 7e Arrondissement, Paris, Île-de-France, France métropolitaine, 75007, France"
    ),
    "address": {
        "man_made": "Eiffel Tower",
        "house_number": "5",
        "road": "Avenue Anatole France",
        "quarter": "Quartier du Gros-Caillou",
        "city_district": "Paris 7e Arrondissement",
        "city": "Paris",
        "state": "Île-de-France",
        "postcode": "75007",
        "country": "France",
        "country_code": "fr",
    },
    "boundingbox": ["48.8574753", "48.8590453", "2.2933119", "2.2956897"],
}


def eiffel_found(query: str = "Eiffel Tower, Paris") -> LookupResult:
    return parse_search_results(query, [EIFFEL_TOWER])


class FakeGeocoder:
    """Scripted geocoder: pops one outcome per call (result or exception to raise)."""

    def __init__(self, outcomes: Optional[List[Any]] = None, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.queries: List[str] = []
        self.active = 0
        self.max_active = 0

    async def lookup(self, query: str) -> LookupResult:
        self.queries.append(query)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else eiffel_found(query)
        finally:
            self.active -= 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def rpc(method: str, params: Optional[Dict[str, Any]] = None, id: Optional[int] = 1) -> bytes:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    if id is not None:
        message["id"] = id
    return json.dumps(message).encode("utf-8")


def initialize_params(protocol_version: str = "2024-11-05") -> Dict[str, Any]:
    return {
        "protocolVersion": protocol_version,
        "capabilities": {},
        "clientInfo": {"name": "pytest-client", "version": "1.0.0"},
    }


def parse_frame(frame: str) -> Tuple[str, str]:
    event = ""
    data: List[str] = []
    for line in frame.strip("\n").split("\n"):
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            data.append(line[len("data: "):])
    return event, "\n".join(data)


async def next_frame(events: AsyncIterator[str]) -> Tuple[str, str]:
    frame = await asyncio.wait_for(events.__anext__(), timeout=2.0)
    return parse_frame(frame)


async def next_message(events: AsyncIterator[str]) -> Dict[str, Any]:
    event, data = await next_frame(events)
    assert event == "message"
    return json.loads(data)


@pytest.fixture
def settings() -> Settings:
    return Settings(keepalive_seconds=5.0)


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder()


@pytest.fixture
def tool_metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def session_metrics() -> SessionMetrics:
    return SessionMetrics()


@pytest_asyncio.fixture
async def manager(settings, geocoder, tool_metrics, session_metrics):
    manager = SessionManager(
        SessionRegistry(),
        build_processor_factory(settings, geocoder, tool_metrics),
        message_path=settings.message_path,
        keepalive_seconds=settings.keepalive_seconds,
        metrics=session_metrics,
    )
    yield manager
    await manager.shutdown(timeout=1.0)

"""
Dev stub for the Nominatim search API.

Run with ``uvicorn dev_backend.main:app --port 8088`` and start the server with
``NOMINATIM_BASE_URL=http://127.0.0.1:8088`` to work offline.
"""
from __future__ import annotations

import os
from typing import Any, Dict, List

from fastapi import FastAPI, Query, Response

SERVICE_NAME = os.getenv("SERVICE_NAME", "nominatim-stub")

app = FastAPI(title=f"Dev stub backend for {SERVICE_NAME}")

PLACES: List[Dict[str, Any]] = [
    {
        "place_id": 82172291,
        "osm_type": "way",
        "osm_id": 5013364,
        "lat": "48.8582599",
        "lon": "2.2945006",
        "class": "man_made",
        "type": "tower",
        "display_name": "Eiffel Tower, 5, Avenue Anatole France, Paris, Île-de-France, 75007, France",
        "address": {
            "man_made": "Eiffel Tower",
            "road": "Avenue Anatole France",
            "city": "Paris",
            "postcode": "75007",
            "country": "France",
            "country_code": "fr",
        },
    },
    {
        "place_id": 240109189,
        "osm_type": "relation",
        "osm_id": 62422,
        "lat": "52.5173885",
        "lon": "13.3951309",
        "class": "boundary",
        "type": "administrative",
        "display_name": "Berlin, Deutschland",
        "address": {"city": "Berlin", "country": "Deutschland", "country_code": "de"},
    },
]


@app.get("/search")
async def search(
    q: str = Query(default=""),
    format: str = Query(default="json"),
    limit: int = Query(default=1, ge=1),
) -> Any:
    # Simulate upstream failures: "status:503" answers with that status
    if q.startswith("status:"):
        return Response(status_code=int(q.split(":", 1)[1] or 500))
    needle = q.lower().split(",")[0].strip()
    matches = [p for p in PLACES if needle and needle in p["display_name"].lower()]
    return matches[:limit]

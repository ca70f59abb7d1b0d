"""
Nominatim geocoding client.

Looks up a free-text place query against the OpenStreetMap Nominatim search API
and returns one of three result types:

- LocationFound: the most relevant match (limit=1)
- LocationNotFound: the search succeeded but returned nothing
- LookupFailed: network error, timeout, non-2xx status, bad JSON, open circuit

``lookup`` never raises for upstream problems; they come back as LookupFailed.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import DEFAULT_USER_AGENT
from .errors import CircuitBreakerError, GeocodingError

logger = logging.getLogger("osm_mcp_server.geocoding")

FAILURE_PREFIX = "Failed to query OpenStreetMap"


@dataclass(frozen=True)
class LocationFound:
    query: str
    display_name: str
    latitude: float
    longitude: float
    address_details: Dict[str, str] = field(default_factory=dict)
    osm_type: Optional[str] = None
    osm_id: Optional[int] = None
    place_class: Optional[str] = None
    place_type: Optional[str] = None


@dataclass(frozen=True)
class LocationNotFound:
    query: str
    message: str


@dataclass(frozen=True)
class LookupFailed:
    query: str
    error: str


LookupResult = Union[LocationFound, LocationNotFound, LookupFailed]


def to_envelope(result: LookupResult) -> Dict[str, Any]:
    """Serialize a lookup result into the JSON envelope returned to tool callers."""
    if isinstance(result, LocationFound):
        return {
            "query": result.query,
            "found": True,
            "display_name": result.display_name,
            "latitude": result.latitude,
            "longitude": result.longitude,
            "address_details": dict(result.address_details),
            "osm_type": result.osm_type,
            "osm_id": result.osm_id,
            "class": result.place_class,
            "type": result.place_type,
        }
    if isinstance(result, LocationNotFound):
        return {"query": result.query, "found": False, "message": result.message}
    if isinstance(result, LookupFailed):
        return {"query": result.query, "found": False, "error": result.error}
    raise TypeError(f"Unsupported lookup result: {type(result).__name__}")


def parse_search_results(query: str, data: Any) -> LookupResult:
    """Turn a Nominatim /search JSON body into a lookup result."""
    if not isinstance(data, list):
        raise GeocodingError("Unexpected response shape from Nominatim (expected a list)")
    if not data:
        return LocationNotFound(
            query=query,
            message=f'Could not find location information for "{query}".',
        )

    item = data[0]
    return LocationFound(
        query=query,
        display_name=item["display_name"],
        latitude=float(item["lat"]),
        longitude=float(item["lon"]),
        address_details=dict(item.get("address") or {}),
        osm_type=item.get("osm_type"),
        osm_id=item.get("osm_id"),
        place_class=item.get("class"),
        place_type=item.get("type"),
    )


class CircuitBreaker:
    """
    Circuit breaker guarding the upstream geocoding service.

    States:
    - closed: requests pass through
    - open: too many consecutive failures, requests are rejected immediately
    - half_open: recovery timeout elapsed, a limited number of trial calls pass
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max_calls: int = 1,
        service: str = "nominatim",
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.service = service

        self._state = "closed"
        self._failures = 0
        self._last_failure_time = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._last_failure_time >= self.recovery_timeout:
            self._state = "half_open"
            self._half_open_calls = 0
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def reset_in(self) -> float:
        elapsed = time.monotonic() - self._last_failure_time
        return max(0.0, self.recovery_timeout - elapsed)

    def before_call(self) -> None:
        """Raises CircuitBreakerError if the call must not be attempted."""
        state = self.state
        if state == "open":
            raise CircuitBreakerError(self.service, self.reset_in())
        if state == "half_open":
            if self._half_open_calls >= self.half_open_max_calls:
                raise CircuitBreakerError(self.service, self.reset_in())
            self._half_open_calls += 1

    def record_success(self) -> None:
        self._state = "closed"
        self._failures = 0
        self._half_open_calls = 0

    def record_failure(self) -> None:
        self._last_failure_time = time.monotonic()
        if self.state == "half_open":
            self._state = "open"
            self._half_open_calls = 0
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._state = "open"


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


class NominatimClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = "https://nominatim.openstreetmap.org",
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 10.0,
        retries: int = 1,
        backoff_seconds: float = 0.3,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.backoff_seconds = backoff_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @property
    def search_url(self) -> str:
        return f"{self.base_url}/search"

    async def lookup(self, query: str) -> LookupResult:
        logger.info(f'Geocoding lookup for "{query}"')
        start = time.perf_counter()
        try:
            data = await self._search(query)
            result = parse_search_results(query, data)
        except Exception as exc:
            logger.error(
                f"Error querying OpenStreetMap: {_describe(exc)}",
                extra={"duration_ms": (time.perf_counter() - start) * 1000.0},
            )
            return LookupFailed(query=query, error=f"{FAILURE_PREFIX}: {_describe(exc)}")

        if isinstance(result, LocationFound):
            logger.info(f'Found result for "{query}": {result.display_name}')
        else:
            logger.info(f'No results found for "{query}"')
        return result

    async def _search(self, query: str) -> List[Any]:
        self.circuit_breaker.before_call()

        params = {"q": query, "format": "json", "limit": 1, "addressdetails": 1}
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}

        last_exc: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                response = await self.http_client.get(
                    self.search_url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout,
                )
            except httpx.HTTPError as exc:
                last_exc = exc
                logger.warning(f"Nominatim request failed (attempt {attempt + 1}): {_describe(exc)}")
            else:
                status = response.status_code
                if status < 400:
                    try:
                        data = response.json()
                    except ValueError as exc:
                        self.circuit_breaker.record_failure()
                        raise GeocodingError(f"Invalid JSON from Nominatim: {_describe(exc)}") from exc
                    self.circuit_breaker.record_success()
                    return data

                logger.error(f"Nominatim API error: {status} {response.reason_phrase} {response.text[:200]}")
                error = GeocodingError(
                    f"Nominatim API request failed with status {status}: {response.reason_phrase}"
                )
                # Client errors other than rate limiting will not succeed on retry,
                # and they say nothing about upstream health
                if status < 500 and status != 429:
                    self.circuit_breaker.record_success()
                    raise error
                last_exc = error

            if attempt < self.retries:
                await asyncio.sleep(self.backoff_seconds * (2**attempt))

        self.circuit_breaker.record_failure()
        if isinstance(last_exc, GeocodingError):
            raise last_exc
        raise GeocodingError(_describe(last_exc) if last_exc else "Unknown upstream error") from last_exc

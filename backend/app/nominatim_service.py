"""Nominatim lookups used by the resolution pipeline.

Covers forward search (free text -> Place), reverse lookup (Place -> postcode)
and postal-code boundary search. Only the first candidate of any Nominatim
response is ever used; no ranking or disambiguation happens here.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import Settings
from .models import Place
from .upstream import PipelineError, UpstreamAPIError, request_json

logger = logging.getLogger(__name__)

REVERSE_ZOOM = 18
BOUNDARY_COUNTRY = "USA"
AREAL_GEOMETRY_TYPES = {"Polygon", "MultiPolygon"}


class NotFoundError(PipelineError):
    pass


class NoPostalCodeError(PipelineError):
    pass


class GeocodingServiceError(PipelineError):
    pass


class BoundaryServiceError(PipelineError):
    pass


def _headers(settings: Settings, **extra: str) -> dict[str, str]:
    headers = {"User-Agent": settings.nominatim_user_agent}
    headers.update(extra)
    return headers


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _clean_address(raw: Any) -> dict[str, str] | None:
    if not isinstance(raw, dict):
        return None
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _first(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        return payload[0]
    return None


def place_from_candidate(candidate: dict[str, Any]) -> Place | None:
    lat = _to_float(candidate.get("lat"))
    lon = _to_float(candidate.get("lon"))
    if lat is None or lon is None:
        return None
    return Place(
        latitude=lat,
        longitude=lon,
        display_name=str(candidate.get("display_name") or ""),
        address=_clean_address(candidate.get("address")),
    )


async def resolve(client: httpx.AsyncClient, query: str, *, settings: Settings) -> Place:
    """Forward-geocode ``query`` and return the highest-confidence Place."""
    try:
        payload = await request_json(
            client,
            f"{settings.nominatim_base_url}/search",
            params={"format": "json", "addressdetails": 1, "limit": 1, "q": query},
            stage="geocode",
            headers=_headers(settings, **{"Accept-Language": "en"}),
            timeout=settings.timeout,
        )
    except UpstreamAPIError as exc:
        logger.warning("Forward geocode failed for %r: %s", query, exc)
        raise GeocodingServiceError("Geocoding failed. Please try again later.") from exc

    candidate = _first(payload)
    place = place_from_candidate(candidate) if candidate else None
    if place is None:
        raise NotFoundError("No matching location found.")
    return place


async def resolve_postal_code(
    client: httpx.AsyncClient,
    place: Place,
    *,
    settings: Settings,
) -> str | None:
    """Return the place's postcode, reverse-geocoding only when it is missing.

    ``None`` means the reverse lookup had no postcode either; callers treat that
    as ``NoPostalCodeError``.
    """
    if place.postcode:
        return place.postcode

    try:
        payload = await request_json(
            client,
            f"{settings.nominatim_base_url}/reverse",
            params={
                "format": "json",
                "lat": place.latitude,
                "lon": place.longitude,
                "zoom": REVERSE_ZOOM,
                "addressdetails": 1,
            },
            stage="reverse_geocode",
            headers=_headers(settings),
            timeout=settings.timeout,
        )
    except UpstreamAPIError as exc:
        if exc.status_code is None:
            raise GeocodingServiceError("Geocoding failed. Please try again later.") from exc
        logger.warning("Reverse geocode returned HTTP %s", exc.status_code)
        return None

    address = payload.get("address") if isinstance(payload, dict) else None
    postcode = (_clean_address(address) or {}).get("postcode", "").strip()
    return postcode or None


async def fetch_boundary(
    client: httpx.AsyncClient,
    postal_code: str,
    *,
    settings: Settings,
) -> dict[str, Any] | None:
    """Return the GeoJSON polygon for ``postal_code`` or None for point fallback."""
    try:
        payload = await request_json(
            client,
            f"{settings.nominatim_base_url}/search",
            params={
                "postalcode": postal_code,
                "country": BOUNDARY_COUNTRY,
                "polygon_geojson": 1,
                "format": "json",
                "limit": 1,
            },
            stage="boundary",
            headers=_headers(settings),
            timeout=settings.timeout,
        )
    except UpstreamAPIError as exc:
        logger.warning("Boundary lookup failed for %s: %s", postal_code, exc)
        raise BoundaryServiceError("Could not load boundary for the target Zip Code.") from exc

    match = _first(payload)
    geometry = match.get("geojson") if match else None
    if not isinstance(geometry, dict) or geometry.get("type") not in AREAL_GEOMETRY_TYPES:
        return None
    return geometry

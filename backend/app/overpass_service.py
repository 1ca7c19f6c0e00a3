"""Overpass lookup of postal-code areas surrounding a point.

Neighbor overlays are a supplementary feature, so every failure here degrades
to an empty result instead of surfacing to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import DEFAULT_NEIGHBOR_RADIUS_M, Settings
from .models import RegionCandidate

logger = logging.getLogger(__name__)

Coord = Tuple[float, float]


def _build_overpass_query(lat: float, lon: float, radius_m: int) -> str:
    query = f"""
    [out:json][timeout:25];
    (
      relation["boundary"="postal_code"](around:{radius_m},{lat},{lon});
      way["postal_code"](around:{radius_m},{lat},{lon});
    );
    out geom;
    """
    return "\n".join(line.strip() for line in query.splitlines() if line.strip())


async def _fetch_overpass(
    client: httpx.AsyncClient,
    query: str,
    endpoints: tuple[str, ...],
    timeout: float,
) -> dict:
    """Try Overpass endpoints sequentially until one succeeds."""
    last_error: Exception | None = None
    for endpoint in endpoints:
        try:
            resp = await client.post(endpoint, data={"data": query}, timeout=timeout)
            resp.raise_for_status()
            payload = resp.json()
            if isinstance(payload, dict):
                return payload
            last_error = ValueError(f"Unexpected Overpass payload type: {type(payload).__name__}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Overpass endpoint %s failed: %s", endpoint, exc)
            last_error = exc
    raise RuntimeError(
        "Overpass request failed for all endpoints" + (f": {last_error}" if last_error else "")
    )


def _to_coords(points: Any) -> List[Coord]:
    coords: List[Coord] = []
    if not isinstance(points, list):
        return coords
    for pt in points:
        if not isinstance(pt, dict):
            continue
        lat, lon = pt.get("lat"), pt.get("lon")
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
            coords.append((float(lon), float(lat)))
    return coords


def _close_ring(coords: List[Coord]) -> Optional[List[List[float]]]:
    if len(coords) < 3:
        return None
    ring = list(coords)
    if ring[0] != ring[-1]:
        ring.append(ring[0])
    if len(ring) < 4:
        return None
    return [[lon, lat] for lon, lat in ring]


def _stitch_rings(segments: List[List[Coord]]) -> List[List[Coord]]:
    """Join open way segments that share endpoints into rings."""
    pending = [seg for seg in segments if len(seg) >= 2]
    rings: List[List[Coord]] = []
    while pending:
        ring = list(pending.pop(0))
        extended = True
        while ring[0] != ring[-1] and extended:
            extended = False
            for idx, seg in enumerate(pending):
                if seg[0] == ring[-1]:
                    ring.extend(seg[1:])
                elif seg[-1] == ring[-1]:
                    ring.extend(reversed(seg[:-1]))
                else:
                    continue
                pending.pop(idx)
                extended = True
                break
        rings.append(ring)
    return rings


def element_geometry(el: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Convert an Overpass ``out geom`` element into a GeoJSON polygon, if possible."""
    if el.get("type") == "relation":
        segments = [
            _to_coords(member.get("geometry"))
            for member in el.get("members") or []
            if isinstance(member, dict) and member.get("role", "outer") in ("outer", "")
        ]
        polygons = [[ring] for ring in map(_close_ring, _stitch_rings(segments)) if ring]
        if not polygons:
            return None
        if len(polygons) == 1:
            return {"type": "Polygon", "coordinates": polygons[0]}
        return {"type": "MultiPolygon", "coordinates": polygons}

    ring = _close_ring(_to_coords(el.get("geometry")))
    if ring is None:
        return None
    return {"type": "Polygon", "coordinates": [ring]}


def build_region_candidates(elements: Any, exclude_postal_code: str) -> List[RegionCandidate]:
    """Unique neighbors by postal code (first wins), never the excluded code."""
    zones: List[RegionCandidate] = []
    seen: set[str] = set()
    if not isinstance(elements, list):
        return zones
    for el in elements:
        if not isinstance(el, dict):
            continue
        tags = el.get("tags") or {}
        code = tags.get("postal_code") if isinstance(tags, dict) else None
        if not isinstance(code, str):
            continue
        code = code.strip()
        if not code or code == exclude_postal_code or code in seen:
            continue
        seen.add(code)
        zones.append(RegionCandidate(postal_code=code, geometry=element_geometry(el)))
    return zones


async def fetch_surrounding_regions(
    client: httpx.AsyncClient,
    center: Coord,
    exclude_postal_code: str,
    *,
    settings: Settings,
    radius_m: int = DEFAULT_NEIGHBOR_RADIUS_M,
) -> List[RegionCandidate]:
    lat, lon = center
    query = _build_overpass_query(lat, lon, radius_m)
    try:
        payload = await _fetch_overpass(client, query, settings.overpass_endpoints, settings.timeout)
    except RuntimeError as exc:
        logger.warning("Neighbor discovery around %.5f,%.5f failed: %s", lat, lon, exc)
        return []
    return build_region_candidates(payload.get("elements"), exclude_postal_code)

"""Map rendering surface used by the pipeline.

The real surface is a browser map; the backend keeps an in-memory mirror of
what it has been told to draw so the frontend can render it from
``snapshot()``. Overlays carry their click handler, which the interaction
controller binds after drawing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol

LatLon = tuple[float, float]
Bounds = tuple[LatLon, LatLon]
ClickHandler = Callable[["Overlay", Optional[LatLon]], Awaitable["Popup"]]

TARGET_POLYGON_STYLE = {"color": "#2563eb", "weight": 2, "fillColor": "#60a5fa", "fillOpacity": 0.35}
TARGET_MARKER_STYLE = {"radius": 10, "color": "#2563eb", "fillColor": "#60a5fa", "fillOpacity": 0.6}
NEIGHBOR_STYLE = {"color": "#16a34a", "weight": 1.5, "fillColor": "#34d399", "fillOpacity": 0.28}
FIT_PADDING = (20, 20)


@dataclass
class Overlay:
    overlay_id: str
    postal_code: str
    role: str  # "target" | "neighbor"
    shape: str  # "polygon" | "marker"
    geometry: dict[str, Any]
    style: dict[str, Any]
    run_id: int
    anchor: LatLon
    bounds: Bounds | None = None
    on_click: ClickHandler | None = field(default=None, repr=False)

    def to_feature(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "id": self.overlay_id,
            "geometry": self.geometry,
            "properties": {
                "postal_code": self.postal_code,
                "role": self.role,
                "shape": self.shape,
                "style": self.style,
                "run_id": self.run_id,
            },
        }


@dataclass(frozen=True)
class Popup:
    postal_code: str
    location: LatLon
    lines: tuple[str, ...]
    quotes: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "postal_code": self.postal_code,
            "location": {"lat": self.location[0], "lon": self.location[1]},
            "title": f"Zip {self.postal_code}",
            "lines": list(self.lines),
            "quotes": list(self.quotes),
        }


def iter_positions(geometry: dict[str, Any]) -> Iterator[LatLon]:
    """Yield (lat, lon) for every vertex of a Point/Polygon/MultiPolygon."""
    gtype = geometry.get("type")
    coords = geometry.get("coordinates")
    if not isinstance(coords, list):
        coords = []
    if gtype == "Point":
        rings: list = [[coords]]
    elif gtype == "Polygon":
        rings = coords
    elif gtype == "MultiPolygon":
        rings = [ring for polygon in coords if isinstance(polygon, list) for ring in polygon]
    else:
        rings = []
    for ring in rings:
        if not isinstance(ring, list):
            continue
        for position in ring:
            if not isinstance(position, (list, tuple)) or len(position) < 2:
                continue
            lon, lat = position[0], position[1]
            if isinstance(lat, bool) or isinstance(lon, bool):
                continue
            if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
                yield float(lat), float(lon)


def geometry_bounds(geometry: dict[str, Any]) -> Bounds | None:
    positions = list(iter_positions(geometry))
    if not positions:
        return None
    lats = [lat for lat, _ in positions]
    lons = [lon for _, lon in positions]
    return (min(lats), min(lons)), (max(lats), max(lons))


def bounds_center(bounds: Bounds) -> LatLon:
    (south, west), (north, east) = bounds
    return (south + north) / 2, (west + east) / 2


def _overlay_id(run_id: int, role: str, postal_code: str) -> str:
    return f"r{run_id}-{role}-{postal_code}"


def polygon_overlay(
    geometry: dict[str, Any],
    *,
    postal_code: str,
    role: str,
    run_id: int,
    style: dict[str, Any],
) -> Overlay | None:
    bounds = geometry_bounds(geometry)
    if bounds is None:
        return None
    return Overlay(
        overlay_id=_overlay_id(run_id, role, postal_code),
        postal_code=postal_code,
        role=role,
        shape="polygon",
        geometry=geometry,
        style=dict(style),
        run_id=run_id,
        anchor=bounds_center(bounds),
        bounds=bounds,
    )


def marker_overlay(
    center: LatLon,
    *,
    postal_code: str,
    role: str,
    run_id: int,
    style: dict[str, Any],
) -> Overlay:
    lat, lon = center
    return Overlay(
        overlay_id=_overlay_id(run_id, role, postal_code),
        postal_code=postal_code,
        role=role,
        shape="marker",
        geometry={"type": "Point", "coordinates": [lon, lat]},
        style=dict(style),
        run_id=run_id,
        anchor=center,
    )


class MapSurface(Protocol):
    async def set_view(self, center: LatLon, zoom: int) -> None: ...

    async def draw(self, overlay: Overlay) -> None: ...

    async def erase(self, overlay: Overlay) -> None: ...

    async def fit_bounds(self, bounds: Bounds, padding: tuple[int, int] = FIT_PADDING) -> None: ...

    async def open_popup(self, popup: Popup) -> None: ...

    async def close_popup(self) -> None: ...


class InMemoryMapSurface:
    def __init__(self) -> None:
        self.center: LatLon | None = None
        self.zoom: int | None = None
        self.fitted_bounds: Bounds | None = None
        self.overlays: dict[str, Overlay] = {}
        self.popup: Popup | None = None

    async def set_view(self, center: LatLon, zoom: int) -> None:
        self.center = center
        self.zoom = zoom
        self.fitted_bounds = None

    async def draw(self, overlay: Overlay) -> None:
        self.overlays[overlay.overlay_id] = overlay

    async def erase(self, overlay: Overlay) -> None:
        self.overlays.pop(overlay.overlay_id, None)

    async def fit_bounds(self, bounds: Bounds, padding: tuple[int, int] = FIT_PADDING) -> None:
        self.fitted_bounds = bounds
        self.center = bounds_center(bounds)

    async def open_popup(self, popup: Popup) -> None:
        self.popup = popup

    async def close_popup(self) -> None:
        self.popup = None

    def snapshot(self) -> dict[str, Any]:
        view: dict[str, Any] = {"center": None, "zoom": self.zoom, "bounds": None}
        if self.center is not None:
            view["center"] = {"lat": self.center[0], "lon": self.center[1]}
        if self.fitted_bounds is not None:
            (south, west), (north, east) = self.fitted_bounds
            view["bounds"] = {"south": south, "west": west, "north": north, "east": east}
        return {
            "view": view,
            "overlays": {
                "type": "FeatureCollection",
                "features": [overlay.to_feature() for overlay in self.overlays.values()],
            },
            "popup": self.popup.to_dict() if self.popup else None,
        }

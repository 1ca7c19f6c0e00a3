"""Location-to-rate resolution pipeline.

One run per user action (search submit or locate):

    IDLE -> RESOLVING -> BOUNDARY_LOADING -> RATE_LOADING -> NEIGHBOR_LOADING -> READY

with FAILED reachable from the first three loading states. Each run receives
a new run id from ``MapState``; every overlay mutation carries that id and is
dropped once a newer run has started, so overlapping runs can never leave a
mix of shapes on the map. A superseded run stops issuing further requests at
its next step boundary; calls already in flight are left to finish and their
results are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import Settings
from .map_surface import (
    FIT_PADDING,
    NEIGHBOR_STYLE,
    TARGET_MARKER_STYLE,
    TARGET_POLYGON_STYLE,
    LatLon,
    MapSurface,
    Overlay,
    Popup,
    marker_overlay,
    polygon_overlay,
)
from .models import Place, RateQuote, RegionCandidate
from .nominatim_service import (
    NoPostalCodeError,
    fetch_boundary,
    resolve,
    resolve_postal_code,
)
from .overpass_service import fetch_surrounding_regions
from .perdiem_service import dedupe, describe_quote, fetch_rates
from .upstream import PipelineError

logger = logging.getLogger(__name__)

VIEW_ZOOM = 11
NO_RATES_PANEL_TEXT = "No per diem data for this zip."
NO_RATES_POPUP_TEXT = "No per diem data."

GeolocationSource = Callable[[], Awaitable[LatLon]]


class GeolocationUnavailableError(PipelineError):
    pass


class _RunSuperseded(Exception):
    pass


class RunState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    BOUNDARY_LOADING = "boundary_loading"
    RATE_LOADING = "rate_loading"
    NEIGHBOR_LOADING = "neighbor_loading"
    READY = "ready"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.RESOLVING},
    RunState.RESOLVING: {RunState.BOUNDARY_LOADING, RunState.FAILED},
    RunState.BOUNDARY_LOADING: {RunState.RATE_LOADING, RunState.FAILED},
    RunState.RATE_LOADING: {RunState.NEIGHBOR_LOADING, RunState.FAILED},
    RunState.NEIGHBOR_LOADING: {RunState.READY},
    RunState.READY: set(),
    RunState.FAILED: set(),
}


@dataclass
class StatusBoard:
    message: str = ""
    is_error: bool = False
    is_loading: bool = False

    def update(self, message: str, *, is_error: bool = False, is_loading: bool = False) -> None:
        self.message = message
        self.is_error = bool(is_error)
        self.is_loading = bool(is_loading)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "is_error": self.is_error, "is_loading": self.is_loading}


@dataclass
class RatePanel:
    visible: bool = False
    postal_code: str | None = None
    quotes: list[RateQuote] = field(default_factory=list)

    def hide(self) -> None:
        self.visible = False
        self.postal_code = None
        self.quotes = []

    def show(self, postal_code: str, quotes: list[RateQuote]) -> None:
        self.visible = True
        self.postal_code = postal_code
        self.quotes = dedupe(quotes)

    @property
    def lines(self) -> list[str]:
        if not self.visible:
            return []
        if not self.quotes:
            return [NO_RATES_PANEL_TEXT]
        return [f"Zip {self.postal_code}: {describe_quote(quote)}" for quote in self.quotes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "visible": self.visible,
            "postal_code": self.postal_code,
            "quotes": [quote.to_dict() for quote in self.quotes],
            "lines": self.lines,
        }


@dataclass
class PipelineRun:
    run_id: int
    trigger: str
    year: str
    state: RunState = RunState.IDLE
    history: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    place: Place | None = None
    postal_code: str | None = None
    label: str | None = None
    rates: list[RateQuote] = field(default_factory=list)
    neighbors: list[str] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    superseded: bool = False

    def transition(self, new_state: RunState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid run transition {self.state.value} -> {new_state.value}")
        logger.info("run %s: %s -> %s", self.run_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def to_dict(self) -> dict[str, Any]:
        place = None
        if self.place is not None:
            place = {
                "lat": self.place.latitude,
                "lon": self.place.longitude,
                "display_name": self.place.display_name,
            }
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "year": self.year,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "place": place,
            "postal_code": self.postal_code,
            "label": self.label,
            "rates": [quote.to_dict() for quote in self.rates],
            "neighbors": list(self.neighbors),
            "error": self.error,
            "error_type": self.error_type,
            "superseded": self.superseded,
        }


class MapState:
    """Overlay set shared by every run.

    Only the orchestrator clears it (``start_run``); targets and neighbors
    are added with the id of the run that produced them and ignored when
    that run is no longer the active one.
    """

    def __init__(self, surface: MapSurface):
        self.surface = surface
        self.active_run_id = 0
        self.target: Overlay | None = None
        self.neighbors: dict[str, Overlay] = {}

    def is_current(self, run_id: int) -> bool:
        return run_id == self.active_run_id

    async def start_run(self) -> int:
        self.active_run_id += 1
        await self.clear_all()
        return self.active_run_id

    async def clear_all(self) -> None:
        stale = ([self.target] if self.target else []) + list(self.neighbors.values())
        self.target = None
        self.neighbors = {}
        for overlay in stale:
            await self.surface.erase(overlay)
        await self.surface.close_popup()

    async def _draw_if_current(self, overlay: Overlay) -> bool:
        await self.surface.draw(overlay)
        if self.is_current(overlay.run_id):
            return True
        # A newer run cleared the map while this draw was in flight.
        await self.surface.erase(overlay)
        return False

    async def set_target(self, overlay: Overlay) -> bool:
        if not self.is_current(overlay.run_id):
            return False
        previous, self.target = self.target, None
        if previous is not None:
            await self.surface.erase(previous)
        if not await self._draw_if_current(overlay):
            return False
        self.target = overlay
        return True

    async def add_neighbor(self, overlay: Overlay) -> bool:
        if not self.is_current(overlay.run_id) or overlay.postal_code in self.neighbors:
            return False
        self.neighbors[overlay.postal_code] = overlay
        try:
            drawn = await self._draw_if_current(overlay)
        except Exception:
            self.neighbors.pop(overlay.postal_code, None)
            raise
        return drawn

    def get(self, overlay_id: str) -> Overlay | None:
        if self.target is not None and self.target.overlay_id == overlay_id:
            return self.target
        for overlay in self.neighbors.values():
            if overlay.overlay_id == overlay_id:
                return overlay
        return None


def build_popup(postal_code: str, location: LatLon, quotes: list[RateQuote]) -> Popup:
    unique = dedupe(quotes)
    if unique:
        lines = tuple(describe_quote(quote, separator=" | ") for quote in unique)
    else:
        lines = (NO_RATES_POPUP_TEXT,)
    return Popup(
        postal_code=postal_code,
        location=location,
        lines=lines,
        quotes=tuple(quote.to_dict() for quote in unique),
    )


class OverlayInteractionController:
    """Lazily fetches rates for an overlay whenever it is clicked.

    Nothing is cached between clicks; every click issues one rate request for
    the overlay's postal code and the year selected at click time. A popup is
    only opened while the overlay's run is still the active one.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        surface: MapSurface,
        *,
        settings: Settings,
        year_provider: Callable[[], str],
        is_current: Callable[[int], bool],
    ):
        self.client = client
        self.surface = surface
        self.settings = settings
        self.year_provider = year_provider
        self.is_current = is_current

    def bind(self, overlay: Overlay) -> Overlay:
        overlay.on_click = self._on_click
        return overlay

    async def _on_click(self, overlay: Overlay, location: Optional[LatLon]) -> Popup:
        quotes = await fetch_rates(
            self.client, overlay.postal_code, self.year_provider(), settings=self.settings
        )
        popup = build_popup(overlay.postal_code, location or overlay.anchor, quotes)
        if not self.is_current(overlay.run_id):
            logger.info("Dropping popup for %s from superseded run %s", overlay.postal_code, overlay.run_id)
            return popup
        await self.surface.open_popup(popup)
        return popup

    async def click(self, overlay: Overlay, location: Optional[LatLon] = None) -> Popup:
        if overlay.on_click is None:
            raise LookupError(f"Overlay {overlay.overlay_id} has no click handler bound.")
        return await overlay.on_click(overlay, location)


def static_position(lat: float, lon: float) -> GeolocationSource:
    async def _position() -> LatLon:
        return lat, lon

    return _position


def unavailable_position(message: str = "Unable to retrieve your location.") -> GeolocationSource:
    async def _position() -> LatLon:
        raise GeolocationUnavailableError(message)

    return _position


class PipelineOrchestrator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        surface: MapSurface,
        *,
        settings: Settings,
    ):
        self.client = client
        self.settings = settings
        self.map_state = MapState(surface)
        self.status = StatusBoard()
        self.rate_panel = RatePanel()
        self.selected_year = settings.default_year
        self.last_run: PipelineRun | None = None
        self.interactions = OverlayInteractionController(
            client,
            surface,
            settings=settings,
            year_provider=lambda: self.selected_year,
            is_current=self.map_state.is_current,
        )

    @property
    def surface(self) -> MapSurface:
        return self.map_state.surface

    def select_year(self, year: str) -> str:
        year = (year or "").strip()
        if len(year) != 4 or not year.isdigit():
            raise ValueError(f"Year must be a 4-digit string. Got: {year!r}")
        self.selected_year = year
        return year

    # -- run lifecycle -------------------------------------------------

    async def _begin(self, trigger: str, year: str | None) -> PipelineRun:
        if year:
            self.select_year(year)
        run_id = await self.map_state.start_run()
        run = PipelineRun(run_id=run_id, trigger=trigger, year=self.selected_year)
        self.last_run = run
        self.rate_panel.hide()
        return run

    def _check_current(self, run: PipelineRun) -> None:
        if not self.map_state.is_current(run.run_id):
            run.superseded = True
            raise _RunSuperseded()

    def _set_status(
        self,
        run: PipelineRun,
        message: str,
        *,
        is_error: bool = False,
        is_loading: bool = False,
    ) -> None:
        if self.map_state.is_current(run.run_id):
            self.status.update(message, is_error=is_error, is_loading=is_loading)

    def _fail(self, run: PipelineRun, exc: PipelineError) -> None:
        run.error = str(exc)
        run.error_type = type(exc).__name__
        run.transition(RunState.FAILED)
        logger.info("run %s failed: %s", run.run_id, exc)
        self._set_status(run, str(exc), is_error=True)

    async def search(self, query: str, year: str | None = None) -> PipelineRun:
        query = (query or "").strip()
        if not query:
            raise ValueError("Search query must not be blank.")

        run = await self._begin("search", year)
        self._set_status(run, "Searching for location...", is_loading=True)
        try:
            run.transition(RunState.RESOLVING)
            place = await resolve(self.client, query, settings=self.settings)
            self._check_current(run)
            postal_code = await resolve_postal_code(self.client, place, settings=self.settings)
            self._check_current(run)
            if not postal_code:
                raise NoPostalCodeError("Could not determine a Zip Code for this location.")
            await self._update_view(run, place, postal_code, place.display_name)
        except PipelineError as exc:
            self._fail(run, exc)
        except _RunSuperseded:
            logger.info("run %s superseded by run %s", run.run_id, self.map_state.active_run_id)
        return run

    async def locate(
        self,
        geolocation: GeolocationSource | None,
        year: str | None = None,
    ) -> PipelineRun:
        run = await self._begin("locate", year)
        self._set_status(run, "Locating...", is_loading=True)
        try:
            run.transition(RunState.RESOLVING)
            if geolocation is None:
                raise GeolocationUnavailableError("Geolocation is not supported by your browser.")
            lat, lon = await geolocation()
            self._check_current(run)
            self._set_status(run, "Found location. Finding Zip Code...", is_loading=True)
            place = Place(latitude=lat, longitude=lon, display_name="Your Location")
            postal_code = await resolve_postal_code(self.client, place, settings=self.settings)
            self._check_current(run)
            if not postal_code:
                raise NoPostalCodeError("Could not determine a Zip Code for your location.")
            await self._update_view(run, place, postal_code, "Your Location")
        except PipelineError as exc:
            self._fail(run, exc)
        except _RunSuperseded:
            logger.info("run %s superseded by run %s", run.run_id, self.map_state.active_run_id)
        return run

    async def _update_view(
        self,
        run: PipelineRun,
        place: Place,
        postal_code: str,
        label: str,
    ) -> None:
        center = (place.latitude, place.longitude)
        run.place = place
        run.postal_code = postal_code
        run.label = label

        await self.surface.set_view(center, VIEW_ZOOM)
        self._set_status(run, f"Centering map on {label} (Zip {postal_code})...", is_loading=True)

        run.transition(RunState.BOUNDARY_LOADING)
        geometry = await fetch_boundary(self.client, postal_code, settings=self.settings)
        self._check_current(run)
        await self._draw_target(run, geometry, center, postal_code)

        run.transition(RunState.RATE_LOADING)
        quotes = await fetch_rates(self.client, postal_code, run.year, settings=self.settings)
        self._check_current(run)
        run.rates = dedupe(quotes)
        self.rate_panel.show(postal_code, run.rates)

        run.transition(RunState.NEIGHBOR_LOADING)
        await self._render_surrounding(run, center, postal_code)
        self._check_current(run)
        run.transition(RunState.READY)

    async def _draw_target(
        self,
        run: PipelineRun,
        geometry: dict[str, Any] | None,
        center: LatLon,
        postal_code: str,
    ) -> None:
        overlay = None
        if geometry:
            overlay = polygon_overlay(
                geometry,
                postal_code=postal_code,
                role="target",
                run_id=run.run_id,
                style=TARGET_POLYGON_STYLE,
            )
        if overlay is None:
            overlay = marker_overlay(
                center,
                postal_code=postal_code,
                role="target",
                run_id=run.run_id,
                style=TARGET_MARKER_STYLE,
            )
        self.interactions.bind(overlay)
        drawn = await self.map_state.set_target(overlay)
        if drawn and overlay.bounds is not None:
            await self.surface.fit_bounds(overlay.bounds, FIT_PADDING)

    async def _attach_neighbor(self, run_id: int, zone: RegionCandidate) -> str | None:
        if zone.geometry is None:
            return None
        overlay = polygon_overlay(
            zone.geometry,
            postal_code=zone.postal_code,
            role="neighbor",
            run_id=run_id,
            style=NEIGHBOR_STYLE,
        )
        if overlay is None:
            return None
        self.interactions.bind(overlay)
        if await self.map_state.add_neighbor(overlay):
            return zone.postal_code
        return None

    async def _render_surrounding(self, run: PipelineRun, center: LatLon, postal_code: str) -> None:
        self._set_status(run, "Loading surrounding Zip Codes...", is_loading=True)
        neighbors = await fetch_surrounding_regions(
            self.client,
            center,
            postal_code,
            settings=self.settings,
            radius_m=self.settings.neighbor_radius_m,
        )
        self._check_current(run)
        if not neighbors:
            self._set_status(run, "No nearby postal boundaries found. Showing target only.")
            return

        tasks = [
            asyncio.create_task(self._attach_neighbor(run.run_id, zone)) for zone in neighbors
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        attached = []
        for zone, result in zip(neighbors, results):
            if isinstance(result, BaseException):
                logger.warning("Failed to attach neighbor %s: %s", zone.postal_code, result)
            elif result:
                attached.append(result)
        run.neighbors = attached
        self._set_status(run, "Click any shaded area to see its per diem rate.")

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .map_surface import InMemoryMapSurface
from .perdiem_service import dedupe, describe_quote, fetch_rates
from .pipeline_service import (
    PipelineOrchestrator,
    PipelineRun,
    static_position,
    unavailable_position,
)
from .schemas import (
    ErrorResponse,
    LocateRequest,
    OverlayClickRequest,
    RatesResponse,
    SearchRequest,
    YearSelection,
    YEAR_PATTERN,
)

router = APIRouter()


def _orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _map_snapshot(request: Request, run: PipelineRun | None = None) -> dict:
    orchestrator = _orchestrator(request)
    run = run or orchestrator.last_run
    payload = request.app.state.surface.snapshot()
    payload.update(
        {
            "run": run.to_dict() if run else None,
            "status": orchestrator.status.to_dict(),
            "rate_panel": orchestrator.rate_panel.to_dict(),
            "selected_year": orchestrator.selected_year,
        }
    )
    return payload


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/api/perdiem/search")
async def perdiem_search(body: SearchRequest, request: Request) -> dict:
    """Run the full pipeline for a free-text place query.

    Location and boundary failures do not raise HTTP errors; the returned run
    carries ``state="failed"`` and the status message, mirroring the UI.
    """
    run = await _orchestrator(request).search(body.query, body.year)
    return _map_snapshot(request, run)


@router.post("/api/perdiem/locate")
async def perdiem_locate(body: LocateRequest, request: Request) -> dict:
    point = body.point
    geolocation = static_position(*point) if point else unavailable_position()
    run = await _orchestrator(request).locate(geolocation, body.year)
    return _map_snapshot(request, run)


@router.put("/api/perdiem/year")
def perdiem_select_year(body: YearSelection, request: Request) -> dict[str, str]:
    return {"selected_year": _orchestrator(request).select_year(body.year)}


@router.get("/api/perdiem/map")
def perdiem_map(request: Request) -> dict:
    return _map_snapshot(request)


@router.post(
    "/api/perdiem/overlays/{overlay_id}/click",
    responses={404: {"model": ErrorResponse}},
)
async def perdiem_overlay_click(
    overlay_id: str,
    request: Request,
    body: Optional[OverlayClickRequest] = Body(default=None),
) -> dict:
    orchestrator = _orchestrator(request)
    overlay = orchestrator.map_state.get(overlay_id)
    if overlay is None:
        raise HTTPException(status_code=404, detail=f"Overlay not found: {overlay_id}")
    popup = await orchestrator.interactions.click(overlay, body.point if body else None)
    return popup.to_dict()


@router.get("/api/perdiem/rates", response_model=RatesResponse)
async def perdiem_rates(
    request: Request,
    postal_code: str = Query(..., alias="zip", min_length=3, max_length=10),
    year: Optional[str] = Query(None, pattern=YEAR_PATTERN),
) -> RatesResponse:
    orchestrator = _orchestrator(request)
    year = year or orchestrator.selected_year
    quotes = dedupe(
        await fetch_rates(orchestrator.client, postal_code, year, settings=orchestrator.settings)
    )
    return RatesResponse(
        postal_code=postal_code,
        year=year,
        quotes=[quote.to_dict() for quote in quotes],
        lines=[describe_quote(quote) for quote in quotes],
    )


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(follow_redirects=True, transport=transport) as client:
            surface = InMemoryMapSurface()
            app.state.surface = surface
            app.state.orchestrator = PipelineOrchestrator(client, surface, settings=settings)
            yield

    app = FastAPI(title="Per Diem Map API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()

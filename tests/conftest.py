"""Shared fake upstream for Nominatim, Overpass and the GSA rate API.

Every test drives real service code through ``httpx.MockTransport`` so no
network calls are made.
"""
from __future__ import annotations

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from backend.app.config import Settings

AUSTIN = {"lat": "30.2672", "lon": "-97.7431", "postcode": "78701"}
DALLAS = {"lat": "32.7767", "lon": "-96.797", "postcode": "75201"}


def square(lon: float, lat: float, size: float = 0.01) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [
            [
                [lon, lat],
                [lon + size, lat],
                [lon + size, lat + size],
                [lon, lat + size],
                [lon, lat],
            ]
        ],
    }


def way(code: str, lon: float, lat: float, size: float = 0.01) -> dict:
    return {
        "type": "way",
        "id": abs(hash(code)) % 100000,
        "tags": {"postal_code": code},
        "geometry": [
            {"lat": lat, "lon": lon},
            {"lat": lat, "lon": lon + size},
            {"lat": lat + size, "lon": lon + size},
            {"lat": lat + size, "lon": lon},
            {"lat": lat, "lon": lon},
        ],
    }


def gsa_payload(meals: int, monthly: list[int]) -> dict:
    return {
        "request": {},
        "errors": [],
        "rates": [
            {
                "oconusInfo": None,
                "rate": [
                    {
                        "meals": meals,
                        "months": {"month": [{"value": v, "number": i + 1} for i, v in enumerate(monthly)]},
                        "zip": None,
                    }
                ],
                "state": "TX",
                "year": 2025,
                "isOconus": "false",
            }
        ],
        "version": None,
    }


class FakeUpstream:
    def __init__(self) -> None:
        self.places = {
            "Austin, TX": {
                "lat": AUSTIN["lat"],
                "lon": AUSTIN["lon"],
                "display_name": "Austin, Travis County, Texas, United States",
                "address": {"city": "Austin", "state": "Texas", "postcode": AUSTIN["postcode"]},
            },
            "Dallas, TX": {
                "lat": DALLAS["lat"],
                "lon": DALLAS["lon"],
                "display_name": "Dallas, Dallas County, Texas, United States",
                "address": {"city": "Dallas", "state": "Texas"},
            },
        }
        self.reverse = {DALLAS["lat"]: {"address": {"postcode": DALLAS["postcode"]}}}
        self.boundaries = {
            AUSTIN["postcode"]: square(-97.75, 30.26),
            DALLAS["postcode"]: square(-96.80, 32.77),
        }
        self.neighbors = {
            AUSTIN["lat"]: [
                way("78702", -97.73, 30.26),
                way(AUSTIN["postcode"], -97.75, 30.26),
                way("78703", -97.77, 30.27),
                way("78702", -97.70, 30.20),
            ],
            DALLAS["lat"]: [way("75202", -96.81, 32.78), way("75204", -96.79, 32.80)],
        }
        self.rates = {
            AUSTIN["postcode"]: gsa_payload(79, [150, 150, 150]),
            "78702": gsa_payload(79, [120, 180]),
            DALLAS["postcode"]: gsa_payload(74, [166, 166]),
        }
        self.status_overrides: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        # Optional gate: the first Overpass request waits until it is set.
        self.overpass_gate: asyncio.Event | None = None
        self.overpass_waiting: asyncio.Event | None = None

    def count(self, kind: str) -> int:
        return sum(1 for call_kind, _ in self.calls if call_kind == kind)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path
        params = request.url.params

        if host == "nominatim.openstreetmap.org" and path == "/search" and "q" in params:
            return self._respond("geocode", params["q"], lambda: self._geocode(params["q"]))
        if host == "nominatim.openstreetmap.org" and path == "/search":
            code = params["postalcode"]
            return self._respond("boundary", code, lambda: self._boundary(code))
        if host == "nominatim.openstreetmap.org" and path == "/reverse":
            lat = params["lat"]
            return self._respond("reverse", lat, lambda: self.reverse.get(lat, {"address": {}}))
        if "overpass" in host:
            query = parse_qs(request.content.decode())["data"][0]
            key = next((lat for lat in self.neighbors if f",{lat}," in query), "")
            if self.overpass_gate is not None and self.count("overpass") == 0:
                self.calls.append(("overpass", key))
                if self.overpass_waiting is not None:
                    self.overpass_waiting.set()
                await self.overpass_gate.wait()
                return httpx.Response(200, json={"elements": self.neighbors.get(key, [])})
            return self._respond("overpass", key, lambda: {"elements": self.neighbors.get(key, [])})
        if host == "api.gsa.gov":
            code = path.split("/zip/")[1].split("/")[0]
            return self._respond("rates", code, lambda: self.rates.get(code, {"rates": []}))
        raise AssertionError(f"Unexpected URL in fake upstream: {request.url}")

    def _respond(self, kind: str, key: str, build) -> httpx.Response:
        self.calls.append((kind, key))
        status = self.status_overrides.get(kind)
        if status is not None:
            return httpx.Response(status, text=f"{kind} unavailable")
        return httpx.Response(200, content=json.dumps(build()).encode(), headers={"Content-Type": "application/json"})

    def _geocode(self, query: str) -> list:
        place = self.places.get(query)
        return [place] if place else []

    def _boundary(self, code: str) -> list:
        geometry = self.boundaries.get(code)
        if geometry is None:
            return []
        return [{"place_id": 1, "display_name": code, "geojson": geometry}]


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def settings() -> Settings:
    return Settings(overpass_endpoints=("https://overpass-api.de/api/interpreter",))

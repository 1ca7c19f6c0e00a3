"""Tests for neighbor discovery via Overpass."""
from __future__ import annotations

import asyncio

import httpx

from backend.app.config import Settings
from backend.app.overpass_service import (
    _build_overpass_query,
    build_region_candidates,
    element_geometry,
    fetch_surrounding_regions,
)

from conftest import way


def _fetch(handler, center, exclude, settings, radius_m=15000):
    async def _inner():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_surrounding_regions(
                client, center, exclude, settings=settings, radius_m=radius_m
            )

    return asyncio.run(_inner())


def test_query_targets_postal_boundaries_within_radius():
    query = _build_overpass_query(30.2672, -97.7431, 15000)
    assert 'relation["boundary"="postal_code"](around:15000,30.2672,-97.7431);' in query
    assert 'way["postal_code"](around:15000,30.2672,-97.7431);' in query
    assert query.endswith("out geom;")


def test_candidates_exclude_target_and_duplicates(upstream, settings):
    zones = _fetch(upstream.handle, (30.2672, -97.7431), "78701", settings)
    assert [zone.postal_code for zone in zones] == ["78702", "78703"]
    # First occurrence wins for duplicated codes.
    first_ring = zones[0].geometry["coordinates"][0]
    assert first_ring[0] == [-97.73, 30.26]


def test_candidates_never_contain_target_or_duplicates_for_noisy_input():
    elements = [
        {"type": "way", "tags": {"postal_code": "10001"}},
        {"type": "way", "tags": {"postal_code": " 10001 "}},
        {"type": "way", "tags": {"postal_code": "10002"}},
        {"type": "way", "tags": {}},
        {"type": "way"},
        None,
        {"type": "way", "tags": {"postal_code": 10003}},
        {"type": "relation", "tags": {"postal_code": "10004"}, "members": []},
        {"type": "way", "tags": {"postal_code": "10002"}},
    ]
    zones = build_region_candidates(elements, "10002")
    codes = [zone.postal_code for zone in zones]
    assert codes == ["10001", "10004"]
    assert len(codes) == len(set(codes))
    assert zones[1].geometry is None


def test_build_region_candidates_tolerates_non_list():
    assert build_region_candidates(None, "10001") == []
    assert build_region_candidates({"elements": []}, "10001") == []


def test_way_geometry_becomes_closed_polygon():
    geometry = element_geometry(
        {
            "type": "way",
            "geometry": [
                {"lat": 1.0, "lon": 1.0},
                {"lat": 1.0, "lon": 2.0},
                {"lat": 2.0, "lon": 2.0},
            ],
        }
    )
    assert geometry["type"] == "Polygon"
    ring = geometry["coordinates"][0]
    assert ring[0] == ring[-1] == [1.0, 1.0]
    assert len(ring) == 4


def test_degenerate_way_geometry_is_none():
    assert element_geometry({"type": "way", "geometry": [{"lat": 1.0, "lon": 1.0}]}) is None
    assert element_geometry({"type": "way"}) is None


def test_relation_members_are_stitched_into_rings():
    relation = {
        "type": "relation",
        "members": [
            {"type": "way", "role": "outer", "geometry": [{"lat": 0, "lon": 0}, {"lat": 0, "lon": 1}]},
            {"type": "way", "role": "outer", "geometry": [{"lat": 1, "lon": 1}, {"lat": 0, "lon": 1}]},
            {"type": "way", "role": "outer", "geometry": [{"lat": 1, "lon": 1}, {"lat": 0, "lon": 0}]},
            {"type": "way", "role": "inner", "geometry": [{"lat": 0.2, "lon": 0.2}, {"lat": 0.3, "lon": 0.3}]},
        ],
    }
    geometry = element_geometry(relation)
    assert geometry["type"] == "Polygon"
    ring = geometry["coordinates"][0]
    assert ring[0] == ring[-1]
    assert len(ring) == 4


def test_relation_with_two_separate_rings_is_multipolygon():
    relation = {
        "type": "relation",
        "members": [way("a", 0.0, 0.0), way("b", 5.0, 5.0)],
    }
    for member in relation["members"]:
        member["role"] = "outer"
    geometry = element_geometry(relation)
    assert geometry["type"] == "MultiPolygon"
    assert len(geometry["coordinates"]) == 2


def test_service_failure_degrades_to_empty_list(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(504, text="Gateway Timeout")

    assert _fetch(handler, (30.0, -97.0), "78701", settings) == []


def test_transport_failure_degrades_to_empty_list(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    assert _fetch(handler, (30.0, -97.0), "78701", settings) == []


def test_endpoints_are_tried_in_order_until_one_succeeds():
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "overpass-api.de":
            return httpx.Response(429, text="Too Many Requests")
        return httpx.Response(200, json={"elements": [way("78705", -97.74, 30.29)]})

    settings = Settings(
        overpass_endpoints=(
            "https://overpass-api.de/api/interpreter",
            "https://overpass.kumi.systems/api/interpreter",
        )
    )
    zones = _fetch(handler, (30.2672, -97.7431), "78701", settings)
    assert [zone.postal_code for zone in zones] == ["78705"]
    assert hosts == ["overpass-api.de", "overpass.kumi.systems"]

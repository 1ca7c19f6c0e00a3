"""Tests for the Nominatim-backed location resolver and boundary fetch."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.app.models import Place
from backend.app.nominatim_service import (
    BoundaryServiceError,
    GeocodingServiceError,
    NotFoundError,
    fetch_boundary,
    resolve,
    resolve_postal_code,
)


def _run(upstream, coro_factory):
    async def _inner():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handle)) as client:
            return await coro_factory(client)

    return asyncio.run(_inner())


def test_resolve_returns_first_candidate_as_place(upstream, settings):
    place = _run(upstream, lambda c: resolve(c, "Austin, TX", settings=settings))
    assert place.latitude == pytest.approx(30.2672)
    assert place.longitude == pytest.approx(-97.7431)
    assert place.display_name.startswith("Austin")
    assert place.postcode == "78701"


def test_resolve_sends_english_language_preference(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["lang"] = request.headers.get("Accept-Language")
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{"lat": "1.5", "lon": "2.5", "display_name": "Somewhere"}])

    async def _inner():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await resolve(client, "somewhere", settings=settings)

    place = asyncio.run(_inner())
    assert place == Place(latitude=1.5, longitude=2.5, display_name="Somewhere", address=None)
    assert seen["lang"] == "en"
    assert seen["params"]["limit"] == "1"
    assert seen["params"]["addressdetails"] == "1"


def test_resolve_raises_not_found_for_empty_result(upstream, settings):
    with pytest.raises(NotFoundError, match="No matching location found."):
        _run(upstream, lambda c: resolve(c, "Atlantis", settings=settings))


def test_resolve_raises_geocoding_error_on_http_failure(upstream, settings):
    upstream.status_overrides["geocode"] = 503
    with pytest.raises(GeocodingServiceError):
        _run(upstream, lambda c: resolve(c, "Austin, TX", settings=settings))


def test_postcode_in_address_skips_reverse_lookup(upstream, settings):
    async def _resolve_both(client):
        place = await resolve(client, "Austin, TX", settings=settings)
        return await resolve_postal_code(client, place, settings=settings)

    assert _run(upstream, _resolve_both) == "78701"
    assert upstream.count("reverse") == 0


def test_reverse_lookup_used_when_address_lacks_postcode(upstream, settings):
    place = Place(latitude=32.7767, longitude=-96.797, display_name="Dallas", address={"city": "Dallas"})
    code = _run(upstream, lambda c: resolve_postal_code(c, place, settings=settings))
    assert code == "75201"
    assert upstream.calls == [("reverse", "32.7767")]


def test_reverse_lookup_without_postcode_returns_none(upstream, settings):
    place = Place(latitude=0.0, longitude=0.0)
    assert _run(upstream, lambda c: resolve_postal_code(c, place, settings=settings)) is None


def test_reverse_lookup_http_failure_returns_none(upstream, settings):
    upstream.status_overrides["reverse"] = 500
    place = Place(latitude=32.7767, longitude=-96.797)
    assert _run(upstream, lambda c: resolve_postal_code(c, place, settings=settings)) is None


def test_postal_code_keeps_leading_zeros(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"address": {"postcode": "02108"}})

    async def _inner():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await resolve_postal_code(client, Place(42.35, -71.06), settings=settings)

    assert asyncio.run(_inner()) == "02108"


def test_fetch_boundary_returns_polygon(upstream, settings):
    geometry = _run(upstream, lambda c: fetch_boundary(c, "78701", settings=settings))
    assert geometry["type"] == "Polygon"


def test_fetch_boundary_returns_none_without_match(upstream, settings):
    assert _run(upstream, lambda c: fetch_boundary(c, "99999", settings=settings)) is None


def test_fetch_boundary_ignores_point_geometry(upstream, settings):
    upstream.boundaries["78701"] = {"type": "Point", "coordinates": [-97.74, 30.27]}
    assert _run(upstream, lambda c: fetch_boundary(c, "78701", settings=settings)) is None


def test_fetch_boundary_raises_on_http_failure(upstream, settings):
    upstream.status_overrides["boundary"] = 502
    with pytest.raises(BoundaryServiceError, match="Could not load boundary"):
        _run(upstream, lambda c: fetch_boundary(c, "78701", settings=settings))

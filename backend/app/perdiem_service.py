"""Per-diem rate lookup and normalization.

The GSA payload nests rates three levels deep::

    {"rates": [{"rate": [{"meals": 79, "months": {"month": [{"value": 150}, ...]}}]}]}

Each level is parsed into an explicit record with optional fields before any
RateQuote is produced, so malformed shapes fall into "N/A" branches instead of
raising. Rate lookups are enrichment only: every failure yields an empty list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx

from .config import Settings
from .models import NOT_AVAILABLE, Number, RateQuote, format_rate_value
from .upstream import UpstreamAPIError, request_json

logger = logging.getLogger(__name__)

RATE_LIST_KEYS = ("rates", "rate")


@dataclass(frozen=True)
class SubRate:
    meals: Number | None = None
    monthly_lodging: tuple[Number, ...] | None = None


@dataclass(frozen=True)
class RateRecord:
    sub_rates: tuple[SubRate, ...] = field(default_factory=tuple)


def _to_number(value: Any) -> Number | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            number = float(stripped)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    return None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_monthly(months: Any) -> tuple[Number, ...] | None:
    if not isinstance(months, dict):
        return None
    breakdown = months.get("month")
    if not isinstance(breakdown, list):
        return None
    values = []
    for entry in breakdown:
        value = _to_number(entry.get("value")) if isinstance(entry, dict) else None
        if value is not None:
            values.append(value)
    return tuple(values)


def _parse_sub_rate(raw: Any) -> SubRate:
    if not isinstance(raw, dict):
        return SubRate()
    return SubRate(
        meals=_to_number(raw.get("meals")),
        monthly_lodging=_parse_monthly(raw.get("months")),
    )


def parse_rate_records(raw: Any) -> list[RateRecord]:
    records = []
    for item in _as_list(raw):
        sub_rates = item.get("rate") if isinstance(item, dict) else None
        records.append(
            RateRecord(sub_rates=tuple(_parse_sub_rate(sub) for sub in _as_list(sub_rates)))
        )
    return records


def _lodging_from_breakdown(values: tuple[Number, ...] | None) -> Number | str:
    if not values:
        return NOT_AVAILABLE
    low, high = min(values), max(values)
    if low == high:
        return low
    return f"{format_rate_value(low)}-{format_rate_value(high)}"


def normalize(raw: Any) -> list[RateQuote]:
    """Flatten a raw rate payload into one RateQuote per sub-record."""
    quotes = []
    for record in parse_rate_records(raw):
        for sub in record.sub_rates:
            quotes.append(
                RateQuote(
                    lodging=_lodging_from_breakdown(sub.monthly_lodging),
                    meals_and_incidentals=sub.meals if sub.meals is not None else NOT_AVAILABLE,
                )
            )
    return quotes


def dedupe(quotes: Iterable[RateQuote]) -> list[RateQuote]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for quote in quotes:
        if quote.key in seen:
            continue
        seen.add(quote.key)
        unique.append(quote)
    return unique


def extract_rate_list(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return []
    for key in RATE_LIST_KEYS:
        value = payload.get(key)
        if isinstance(value, (list, dict)):
            return value
    return []


def build_rate_request(postal_code: str, year: str, settings: Settings) -> tuple[str, dict[str, str]]:
    template = settings.perdiem_rate_url
    params: dict[str, str] = {}
    if "{zip}" in template:
        url = template.format(zip=postal_code, year=year)
    else:
        url = template
        params = {"zip": postal_code, "year": year}
    if settings.perdiem_api_key:
        params["api_key"] = settings.perdiem_api_key
    return url, params


async def fetch_rates(
    client: httpx.AsyncClient,
    postal_code: str,
    year: str,
    *,
    settings: Settings,
) -> list[RateQuote]:
    url, params = build_rate_request(postal_code, year, settings)
    try:
        payload = await request_json(
            client,
            url,
            params=params,
            stage="perdiem",
            headers={"User-Agent": settings.nominatim_user_agent},
            timeout=settings.timeout,
        )
    except UpstreamAPIError as exc:
        logger.warning("Per diem lookup for %s/%s failed: %s", postal_code, year, exc)
        return []
    return normalize(extract_rate_list(payload))


def describe_quote(quote: RateQuote, separator: str = " / ") -> str:
    return (
        f"Lodging ${format_rate_value(quote.lodging)}{separator}"
        f"M&IE ${format_rate_value(quote.meals_and_incidentals)}"
    )

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

NOT_AVAILABLE = "N/A"

Number = Union[int, float]
LodgingValue = Union[int, float, str]
MealsValue = Union[int, float, str]


@dataclass(frozen=True)
class Place:
    latitude: float
    longitude: float
    display_name: str = ""
    address: dict[str, str] | None = None

    @property
    def postcode(self) -> str | None:
        if not self.address:
            return None
        value = self.address.get("postcode")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


@dataclass(frozen=True)
class RateQuote:
    lodging: LodgingValue = NOT_AVAILABLE
    meals_and_incidentals: MealsValue = NOT_AVAILABLE

    @property
    def key(self) -> tuple[str, str]:
        return (format_rate_value(self.lodging), format_rate_value(self.meals_and_incidentals))

    def to_dict(self) -> dict[str, Any]:
        return {
            "lodging": self.lodging,
            "meals_and_incidentals": self.meals_and_incidentals,
        }


@dataclass(frozen=True)
class RegionCandidate:
    postal_code: str
    geometry: dict[str, Any] | None = field(default=None, compare=False)


def format_rate_value(value: object) -> str:
    """Render a rate figure the way the rate panel shows it (150.0 -> "150")."""
    if value is None or isinstance(value, bool):
        return NOT_AVAILABLE
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or NOT_AVAILABLE
    return NOT_AVAILABLE

from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

YEAR_PATTERN = r"^\d{4}$"


class ErrorResponse(BaseModel):
    detail: str


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., min_length=1, max_length=200)
    year: str | None = Field(default=None, pattern=YEAR_PATTERN)

    @field_validator("query")
    @classmethod
    def validate_query(cls, query: str) -> str:
        cleaned = query.strip()
        if not cleaned:
            raise ValueError("query must not be blank")
        return cleaned


class _OptionalPoint(BaseModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def validate_pair(self):
        if (self.lat is None) != (self.lon is None):
            raise ValueError("lat and lon must be provided together")
        return self

    @property
    def point(self) -> tuple[float, float] | None:
        if self.lat is None or self.lon is None:
            return None
        return self.lat, self.lon


class LocateRequest(_OptionalPoint):
    """Device position reported by the client; omit both fields when unavailable."""

    model_config = ConfigDict(extra="forbid")

    year: str | None = Field(default=None, pattern=YEAR_PATTERN)


class OverlayClickRequest(_OptionalPoint):
    model_config = ConfigDict(extra="forbid")


class YearSelection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    year: str = Field(..., pattern=YEAR_PATTERN)


class RateQuoteOut(BaseModel):
    lodging: Union[int, float, str]
    meals_and_incidentals: Union[int, float, str]


class RatesResponse(BaseModel):
    postal_code: str
    year: str
    quotes: list[RateQuoteOut] = Field(default_factory=list)
    lines: list[str] = Field(default_factory=list)

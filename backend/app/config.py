from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_project_root = Path(__file__).resolve().parents[2]

DEFAULT_NOMINATIM_BASE_URL = "https://nominatim.openstreetmap.org"
DEFAULT_OVERPASS_ENDPOINTS = (
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
)
DEFAULT_PERDIEM_RATE_URL = "https://api.gsa.gov/travel/perdiem/v2/rates/zip/{zip}/year/{year}"
DEFAULT_YEAR = "2025"
DEFAULT_NEIGHBOR_RADIUS_M = 15000


def _load_dotenv() -> None:
    """Load .env from project root or cwd without overriding the real environment."""
    for path in (_project_root / ".env", Path.cwd() / ".env"):
        if path.is_file():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        k, _, v = line.partition("=")
                        v = v.strip().strip('"').strip("'")
                        os.environ.setdefault(k.strip(), v)
            break


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name, default) or default).strip()


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    nominatim_base_url: str = DEFAULT_NOMINATIM_BASE_URL
    nominatim_user_agent: str = "perdiem-map/0.1"
    overpass_endpoints: tuple[str, ...] = DEFAULT_OVERPASS_ENDPOINTS
    perdiem_rate_url: str = DEFAULT_PERDIEM_RATE_URL
    perdiem_api_key: str = "DEMO_KEY"
    default_year: str = DEFAULT_YEAR
    timeout: float = 20.0
    neighbor_radius_m: int = DEFAULT_NEIGHBOR_RADIUS_M
    cors_origins: tuple[str, ...] = field(default=("*",))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        _load_dotenv()

        overpass = _split_csv(os.getenv("OVERPASS_ENDPOINTS", "")) or DEFAULT_OVERPASS_ENDPOINTS
        cors = _split_csv(os.getenv("CORS_ORIGINS", "*")) or ("*",)

        try:
            timeout = float(_env_str("HTTP_TIMEOUT_SECONDS", "20"))
        except ValueError:
            timeout = 20.0
        try:
            radius = int(_env_str("NEIGHBOR_RADIUS_M", str(DEFAULT_NEIGHBOR_RADIUS_M)))
        except ValueError:
            radius = DEFAULT_NEIGHBOR_RADIUS_M

        return cls(
            nominatim_base_url=_env_str("NOMINATIM_BASE_URL", DEFAULT_NOMINATIM_BASE_URL).rstrip("/"),
            nominatim_user_agent=_env_str("NOMINATIM_USER_AGENT", "perdiem-map/0.1"),
            overpass_endpoints=overpass,
            perdiem_rate_url=_env_str("PERDIEM_RATE_URL", DEFAULT_PERDIEM_RATE_URL),
            # An explicitly empty key disables the api_key query param.
            perdiem_api_key=(os.getenv("PERDIEM_API_KEY", "DEMO_KEY") or "").strip(),
            default_year=_env_str("PERDIEM_DEFAULT_YEAR", DEFAULT_YEAR),
            timeout=timeout if timeout > 0 else 20.0,
            neighbor_radius_m=radius if radius > 0 else DEFAULT_NEIGHBOR_RADIUS_M,
            cors_origins=cors,
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

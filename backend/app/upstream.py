from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class UpstreamAPIError(RuntimeError):
    def __init__(self, stage: str, message: str, status_code: int | None = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message
        self.status_code = status_code


class PipelineError(RuntimeError):
    """Base for errors that abort a resolution run.

    The message is shown verbatim in the status area.
    """


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


async def request_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, Any] | None,
    stage: str,
    headers: dict[str, str] | None = None,
    timeout: float = 20.0,
) -> Any:
    """GET ``url`` once and decode the JSON body.

    Transport failures, non-2xx statuses and undecodable bodies all surface as
    ``UpstreamAPIError`` so callers decide whether the stage is fatal.
    """
    logger.debug("[%s] GET %s params=%s", stage, url, params)
    try:
        response = await client.get(url, params=params, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        raise UpstreamAPIError(stage, f"Network error: {exc!s}") from exc

    status = response.status_code
    logger.debug("[%s] HTTP %s", stage, status)
    if not 200 <= status < 300:
        raise UpstreamAPIError(
            stage, f"HTTP {status}: {_short_error_text(response.text)}", status_code=status
        )

    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamAPIError(
            stage, f"Invalid JSON in upstream response (HTTP {status})", status_code=status
        ) from exc

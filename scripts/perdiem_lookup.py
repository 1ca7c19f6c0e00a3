#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

import httpx

from backend.app.config import Settings
from backend.app.map_surface import InMemoryMapSurface
from backend.app.nominatim_service import NoPostalCodeError, NotFoundError
from backend.app.pipeline_service import PipelineOrchestrator, RunState, static_position

EXIT_INVALID_ARGS = 2
EXIT_NOT_FOUND = 3
EXIT_UPSTREAM_FAILURE = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Resolve a place to its Zip Code and look up GSA per diem rates for it "
            "and the surrounding Zip Codes."
        )
    )
    parser.add_argument("--query", type=str, default=None, help='Place search text, e.g. "Austin, TX".')
    parser.add_argument("--lat", type=float, default=None, help="Latitude in decimal degrees.")
    parser.add_argument("--lon", type=float, default=None, help="Longitude in decimal degrees.")
    parser.add_argument(
        "--year",
        type=str,
        default=None,
        help="Fiscal year for rates (default: PERDIEM_DEFAULT_YEAR or 2025).",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Output JSON file path. Defaults to scripts/out/perdiem_<zip>.json",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="HTTP timeout in seconds (default: HTTP_TIMEOUT_SECONDS or 20).",
    )
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="Pretty-print output JSON with indentation.",
    )
    return parser


def validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    has_point = args.lat is not None or args.lon is not None
    if args.query and has_point:
        parser.error("Use either --query or --lat/--lon, not both.")
    if not args.query and not has_point:
        parser.error("One of --query or --lat/--lon is required.")
    if has_point:
        if args.lat is None or args.lon is None:
            parser.error("--lat and --lon must be given together.")
        if not -90 <= args.lat <= 90:
            parser.error("--lat must be between -90 and 90.")
        if not -180 <= args.lon <= 180:
            parser.error("--lon must be between -180 and 180.")
    if args.year is not None and (len(args.year) != 4 or not args.year.isdigit()):
        parser.error("--year must be a 4-digit year.")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be > 0.")


def default_output_path(postal_code: str | None) -> Path:
    return Path("scripts/out") / f"perdiem_{postal_code or 'unknown'}.json"


async def run_lookup(args: argparse.Namespace, settings: Settings) -> dict[str, object]:
    surface = InMemoryMapSurface()
    async with httpx.AsyncClient(follow_redirects=True) as client:
        orchestrator = PipelineOrchestrator(client, surface, settings=settings)
        if args.query:
            run = await orchestrator.search(args.query, args.year)
        else:
            run = await orchestrator.locate(static_position(args.lat, args.lon), args.year)

    result = surface.snapshot()
    result["run"] = run.to_dict()
    result["status"] = orchestrator.status.to_dict()
    result["rate_panel"] = orchestrator.rate_panel.to_dict()
    return result


def write_output(payload: dict[str, object], output_path: Path, pretty: bool) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        if pretty:
            json.dump(payload, f, indent=2, ensure_ascii=True)
            f.write("\n")
        else:
            json.dump(payload, f, ensure_ascii=True)


def print_summary(result: dict[str, object], output_path: Path) -> None:
    run = result["run"]
    assert isinstance(run, dict)
    panel = result["rate_panel"]
    assert isinstance(panel, dict)

    print(f"Saved: {output_path}")
    print(f"Zip Code: {run.get('postal_code')} ({run.get('label') or 'n/a'})")
    print(f"Year: {run.get('year')}")
    print("")
    print("Rates:")
    for line in panel.get("lines") or []:
        print(f"- {line}")
    neighbors = run.get("neighbors") or []
    if neighbors:
        print("")
        print(f"Surrounding Zip Codes ({len(neighbors)}): {', '.join(neighbors)}")


def exit_code_for(run: dict[str, object]) -> int:
    if run.get("state") != RunState.FAILED.value:
        return 0
    error_type = run.get("error_type")
    if error_type in (NotFoundError.__name__, NoPostalCodeError.__name__):
        return EXIT_NOT_FOUND
    return EXIT_UPSTREAM_FAILURE


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    validate_args(parser, args)

    settings = Settings.from_env()
    if args.timeout is not None:
        settings = replace(settings, timeout=args.timeout)

    try:
        result = asyncio.run(run_lookup(args, settings))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_ARGS
    run = result["run"]
    assert isinstance(run, dict)

    code = exit_code_for(run)
    if code != 0:
        print(f"Error: {run.get('error')}", file=sys.stderr)
        return code

    output_path = args.out or default_output_path(run.get("postal_code"))
    write_output(result, output_path, pretty=args.pretty)
    print_summary(result, output_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

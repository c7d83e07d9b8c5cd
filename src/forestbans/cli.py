from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from .core import K_FETCHED_AT, K_FORESTS, K_STALE, K_WARNINGS
from .service import LiveForestDataService, read_snapshot, write_snapshot
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.errors import ArchiveError, ForestBansError
from .workflows.models import ForestSnapshot
from .workflows.pipeline import PipelineSettings, parse_saved_archives, run_pipeline

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """forestbans (fire ban and closure pipeline)

Usage:
  forestbans run [--force-refresh] [--out <FILE>] [--verbose]
  forestbans parse <forestry-archive.json> [--closures <archive.json>] [--out <FILE>]
  forestbans snapshot [--force-refresh] [--lat <LAT> --lng <LNG>]
  forestbans doctor

Discoverability:
  --help-full     Expanded help + env vars.
  --doctor        Run environment diagnostics and exit.
"""


def _help_full() -> str:
    return """forestbans CLI

Commands:
  run        Scrape every source (through the raw page caches) and print the merged forests.
  parse      Parse saved raw page archives offline; no network access.
  snapshot   Serve one snapshot through the live data service (adds distances with --lat/--lng).
  doctor     Print environment and dependency diagnostics.

Important env vars:
  FORESTBANS_SCRAPE_TTL_MS       Cache/snapshot TTL in ms (0 = always refetch)
  FORESTBANS_RAW_CACHE_PATH      Forestry raw page archive
  FORESTBANS_CLOSURE_CACHE_PATH  Closure raw page archive
  FORESTBANS_SNAPSHOT_PATH       Where the served snapshot is saved
  FORESTBANS_FETCH_TIMEOUT       Seconds per fetch attempt
  FORESTBANS_RETRY_BUDGET        Total seconds for proxy retries
  FORESTBANS_BACKOFF_INITIAL / FORESTBANS_BACKOFF_MAX
  FORESTBANS_FETCH_BACKEND       aiohttp | playwright
  PROXY_HOST, PROXY_PORTS, PROXY_USERNAME, PROXY_PASSWORD, PROXY_PROVIDER
  FORCE_PROXY, CI, FORESTBANS_PROXY_DISABLE

Exit codes:
  0 success, 2 bad input or failed diagnostics, 3 pipeline failure.
"""


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s", stream=sys.stderr)


def _emit(payload: dict, out: Optional[Path]) -> None:
    text = json.dumps(payload, ensure_ascii=False, indent=2)
    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text + "\n", encoding="utf-8")
        typer.echo(f"Wrote {len(payload.get(K_FORESTS, []))} forests to {out}", err=True)
    else:
        sys.stdout.write(text + "\n")


def _echo_warnings(warnings: list) -> None:
    for warning in warnings:
        typer.echo(f"warning: {warning}", err=True)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
) -> None:
    load_dotenv()
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("run", add_help_option=True)
def run_cmd(
    force_refresh: bool = typer.Option(False, "--force-refresh", help="Ignore cached pages younger than the TTL."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write the snapshot JSON to this file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    _configure_logging(verbose)
    settings = PipelineSettings.from_env()
    try:
        result = asyncio.run(run_pipeline(settings, force_refresh=force_refresh))
    except ForestBansError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    snapshot = ForestSnapshot(forests=result.forests, fetched_at=result.fetched_at, warnings=result.warnings)
    _echo_warnings(snapshot.warnings)
    target = out or settings.snapshot_path
    if target is not None:
        write_snapshot(target, snapshot)
        typer.echo(f"Wrote {len(snapshot.forests)} forests to {target}", err=True)
    else:
        _emit(snapshot.to_dict(), None)


@app.command("parse", add_help_option=True)
def parse_cmd(
    archive: Path = typer.Argument(..., help="Forestry raw page archive (JSON)."),
    closures: Optional[Path] = typer.Option(None, "--closures", help="Closure raw page archive (JSON)."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write the snapshot JSON to this file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    _configure_logging(verbose)
    try:
        result = parse_saved_archives(archive, closures)
    except (ArchiveError, OSError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    except ForestBansError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    _echo_warnings(result.warnings)
    snapshot = ForestSnapshot(forests=result.forests, fetched_at=result.fetched_at, warnings=result.warnings)
    _emit(snapshot.to_dict(), out)


@app.command("snapshot", add_help_option=True)
def snapshot_cmd(
    force_refresh: bool = typer.Option(False, "--force-refresh", help="Refresh even if the snapshot is fresh."),
    lat: Optional[float] = typer.Option(None, "--lat", help="User latitude for distances."),
    lng: Optional[float] = typer.Option(None, "--lng", help="User longitude for distances."),
    offline: bool = typer.Option(False, "--offline", help="Print the saved snapshot without refreshing."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    _configure_logging(verbose)
    if (lat is None) != (lng is None):
        typer.echo("error: --lat and --lng must be given together", err=True)
        raise typer.Exit(code=2)
    settings = PipelineSettings.from_env()
    if offline:
        if settings.snapshot_path is None or not settings.snapshot_path.exists():
            typer.echo("error: no saved snapshot (set FORESTBANS_SNAPSHOT_PATH)", err=True)
            raise typer.Exit(code=2)
        saved = read_snapshot(settings.snapshot_path)
        _emit(replace(saved, stale=True).to_dict(), None)
        return

    service = LiveForestDataService(settings)
    location = (lat, lng) if lat is not None and lng is not None else None
    try:
        payload = asyncio.run(service.get_forest_data(force_refresh=force_refresh, user_location=location))
    except ForestBansError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    _echo_warnings(payload.get(K_WARNINGS, []))
    if payload.get(K_STALE):
        typer.echo(f"warning: serving stale snapshot from {payload.get(K_FETCHED_AT)}", err=True)
    _emit(payload, None)

"""
Command line for Stream Guard.

  run       start the agent (scheduler, AutoStop, web HUD)
  validate  replay a recorded video against a stop frame
  hash      print the dHash of an image
  filters   manage stop frame filters (show name -> stop frame)
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import List, Optional

import typer

from . import APP_DISPLAY
from .config import load_config, resolve_path
from .dhash import dhash_9x8, format_hash
from .errors import StreamGuardError
from .ffmpeg import read_gray_9x8, resolve_ffmpeg_path
from .lab import replay_video, write_report
from .logs import configure_logging
from .stop_frames import StopFrameFilterStore

app = typer.Typer(help="Stream Guard: scheduled OBS streams with stop frame detection")


@app.command("run")
def run(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
    schedule: Optional[str] = typer.Option(None, "--schedule", "-s", help="Schedule file (default from config)"),
):
    """Run the agent until Ctrl+C."""
    from .runtime import Runtime

    cfg = load_config(config)
    recent = configure_logging(cfg)
    runtime = Runtime(cfg, schedule_path=schedule, recent=recent)
    try:
        asyncio.run(runtime.run())
    except KeyboardInterrupt:
        pass


@app.command("validate")
def validate(
    video: str = typer.Argument(..., help="Recorded service video"),
    stop_frame: str = typer.Argument(..., help="Stop frame image"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
    fps: Optional[float] = typer.Option(None, "--fps", help="Sample rate (default from config)"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Match threshold 0..1"),
    report: Optional[str] = typer.Option(None, "--report", help="Write a JSON report here"),
    json_output: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
):
    """Replay VIDEO against STOP_FRAME with the production detector."""
    cfg = load_config(config)
    cfg.LOG_TO_FILE_ENABLED = False
    configure_logging(cfg)

    settings = cfg.autostop_settings()
    if fps is not None:
        settings = replace(settings, fps=fps)
    if threshold is not None:
        settings = replace(settings, threshold=threshold)

    try:
        result = asyncio.run(replay_video(resolve_ffmpeg_path(cfg), video, stop_frame, settings))
    except StreamGuardError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if report:
        write_report(result, report)

    summary = {
        "frames": result.frames,
        "fps": result.fps,
        "max_distance": result.max_distance,
        "min_distance": result.min_distance,
        "min_distance_at": result.min_distance_at,
        "first_hit_at": result.first_hit_at,
        "first_trigger_at": result.first_trigger_at,
        "triggers": result.triggers,
    }
    if json_output:
        typer.echo(json.dumps(summary, indent=2))
        return
    typer.echo(APP_DISPLAY)
    typer.echo(f"frames: {result.frames} @ {result.fps:g} fps, maxDistance={result.max_distance}")
    typer.echo(f"best match: distance {result.min_distance} at {result.min_distance_at}s")
    if result.first_trigger_at is None:
        typer.echo("no trigger")
    else:
        typer.echo(f"first trigger at {result.first_trigger_at}s ({len(result.triggers)} total)")


@app.command("hash")
def hash_image(
    image: str = typer.Argument(..., help="Image file"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
):
    """Print the 16-hex-digit dHash of IMAGE."""
    cfg = load_config(config)
    try:
        gray = asyncio.run(read_gray_9x8(resolve_ffmpeg_path(cfg), image))
    except StreamGuardError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(format_hash(dhash_9x8(gray)))


# -----------------------------
# Stop frame filters
# -----------------------------
filters_app = typer.Typer(name="filters", help="Stop frame filters (show name -> stop frame image)")
app.add_typer(filters_app, name="filters")


def _filter_store(config: Optional[str]) -> StopFrameFilterStore:
    cfg = load_config(config)
    return StopFrameFilterStore(resolve_path(cfg.STOP_FRAME_FILTERS_FILE))


@filters_app.command("list")
def list_filters(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
):
    """List stop frame filters."""
    filters = _filter_store(config).read()
    if json_output:
        typer.echo(json.dumps([f.to_dict() for f in filters], indent=2))
        return
    if not filters:
        typer.echo("No stop frame filters")
        return
    for f in filters:
        state = "on " if f.enabled else "off"
        typer.echo(f"{f.id}  [{state}] {f.name}: {', '.join(f.shows) or '-'} -> {f.stop_frame_path or '-'}")


@filters_app.command("add")
def add_filter(
    name: str = typer.Argument(..., help="Filter name"),
    shows: List[str] = typer.Option([], "--show", help="Show name to match (repeatable)"),
    frame: str = typer.Option("", "--frame", help="Stop frame image"),
    enable: bool = typer.Option(False, "--enable", help="Enable the filter now"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
):
    """Add a stop frame filter."""
    f = _filter_store(config).create(name, shows, frame, enabled=enable)
    typer.echo(f"Added filter {f.id} ({f.name})")


def _set_enabled(filter_id: str, enabled: bool, config: Optional[str]) -> None:
    if _filter_store(config).update(filter_id, enabled=enabled) is None:
        typer.echo(f"Error: no filter {filter_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Filter {filter_id} {'enabled' if enabled else 'disabled'}")


@filters_app.command("enable")
def enable_filter(
    filter_id: str = typer.Argument(..., help="Filter id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
):
    _set_enabled(filter_id, True, config)


@filters_app.command("disable")
def disable_filter(
    filter_id: str = typer.Argument(..., help="Filter id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
):
    _set_enabled(filter_id, False, config)


@filters_app.command("remove")
def remove_filter(
    filter_id: str = typer.Argument(..., help="Filter id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON overrides file"),
):
    """Delete a stop frame filter."""
    if not _filter_store(config).delete(filter_id):
        typer.echo(f"Error: no filter {filter_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed filter {filter_id}")


if __name__ == "__main__":
    app()

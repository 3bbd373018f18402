"""
membar command line.

    membar helper            run the statistics service
    membar snapshot          one query, printed as text or JSON
    membar ui                the terminal monitor
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer

from membar import app as tui
from membar.channel import StatisticsChannel
from membar.config import Settings, log_level
from membar.errors import ConfigError, MemBarError
from membar.logs import configure_logging
from membar.models import DetailedMemorySnapshot, MemorySnapshot
from membar.protocol import RequestKind
from membar.scoring import PressureBucket, score
from membar.service import StatisticsServer, StatisticsService

log = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="membar: memory pressure snapshots over a local channel")


def _settings(**overrides) -> Settings:
    try:
        return Settings.from_env().with_overrides(**overrides)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _checked_level(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return log_level(value)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command("helper")
def helper(
    endpoint: Path | None = typer.Option(None, "--endpoint", help="Socket path to listen on."),
    level: str | None = typer.Option(None, "--log-level", help="Log level (default INFO)."),
) -> None:
    """
    Run the statistics service until interrupted
    """
    settings = _settings(endpoint=endpoint)
    configure_logging(_checked_level(level) or "INFO")
    server = StatisticsServer(StatisticsService(), settings.endpoint)
    log.info("starting %s", settings.endpoint)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        log.info("interrupted, shutting down")


async def _query(settings: Settings, kind: RequestKind) -> MemorySnapshot:
    async with StatisticsChannel(settings.endpoint, reconnect_delay=settings.reconnect_delay) as channel:
        request = channel.request(kind)
        if settings.request_timeout is None:
            return await request
        return await asyncio.wait_for(request, settings.request_timeout)


def _render(snapshot: MemorySnapshot, as_json: bool) -> str:
    pressure_score = score(snapshot)
    if as_json:
        payload = snapshot.to_dict()
        payload["score"] = {
            "overall": round(pressure_score.overall, 2),
            "memory_usage_percent": round(pressure_score.memory_usage_percent, 2),
            "swap_usage_percent": pressure_score.swap_usage_percent,
            "bucket": PressureBucket.for_score(pressure_score.overall).value,
        }
        return json.dumps(payload, sort_keys=True)

    lines = [
        f"pressure: {snapshot.pressure.value}",
        f"used: {snapshot.used_display}",
        f"swap: {snapshot.swap_display}",
    ]
    if isinstance(snapshot, DetailedMemorySnapshot):
        lines.append(
            f"total: {snapshot.total_gb:.2f} GB  active: {snapshot.active_gb:.2f} GB  "
            f"wired: {snapshot.wired_gb:.2f} GB  compressed: {snapshot.compressed_gb:.2f} GB"
        )
    lines.append(
        f"score: {pressure_score.overall:.1f} "
        f"({PressureBucket.for_score(pressure_score.overall).value})"
    )
    return "\n".join(lines)


@app.command("snapshot")
def snapshot(
    detailed: bool = typer.Option(False, "--detailed", help="Ask for the detailed breakdown."),
    local: bool = typer.Option(False, "--local", help="Read counters in-process, without the helper."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of text."),
    endpoint: Path | None = typer.Option(None, "--endpoint", help="Helper socket path."),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds to wait for the reply.", min=0.1),
    level: str | None = typer.Option(None, "--log-level", help="Log level (default WARNING)."),
) -> None:
    """
    Print one memory statistics snapshot
    """
    settings = _settings(endpoint=endpoint, request_timeout=timeout)
    configure_logging(_checked_level(level) or settings.log_level)
    kind = RequestKind.DETAILED if detailed else RequestKind.SUMMARY

    try:
        if local:
            result = StatisticsService().handle(kind)
        else:
            result = asyncio.run(_query(settings, kind))
    except asyncio.TimeoutError:
        typer.echo(f"error: no reply within {settings.request_timeout}s", err=True)
        raise typer.Exit(code=1)
    except MemBarError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(_render(result, as_json))


@app.command("ui")
def ui(
    endpoint: Path | None = typer.Option(None, "--endpoint", help="Helper socket path."),
    interval: float | None = typer.Option(None, "--interval", help="Seconds between refreshes.", min=0.1),
    detailed: bool | None = typer.Option(None, "--detailed/--summary", help="Query mode."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write logs here."),
    level: str | None = typer.Option(None, "--log-level", help="Log level (default WARNING)."),
) -> None:
    """
    Run the terminal memory monitor
    """
    settings = _settings(endpoint=endpoint, refresh_interval=interval, detailed=detailed)
    configure_logging(_checked_level(level) or settings.log_level, log_file, quiet=True)
    tui.main(settings)


def main() -> None:
    """Entry point for the membar command."""
    app()


if __name__ == "__main__":
    main()

from __future__ import annotations

from pathlib import Path

import msgspec
import typer

from ..event_log import read_events_jsonl
from .common import CONFIG_OPTION, load_settings_or_exit


def events_tail(
    config: Path | None = CONFIG_OPTION,
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Events to show."),
) -> None:
    """Show the most recent entries of the event log."""
    settings = load_settings_or_exit(config)
    if settings.event_log is None:
        typer.echo("error: event_log is not set in the config.", err=True)
        raise typer.Exit(code=1)
    for event in read_events_jsonl(settings.event_log)[-limit:]:
        typer.echo(msgspec.json.encode(event).decode("utf-8"))

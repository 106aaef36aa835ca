from __future__ import annotations

from pathlib import Path

import anyio
import typer

from ..checkpoint import JsonCheckpointStore, checkpoint_key
from ..errors import CheckpointError
from .common import CONFIG_OPTION, checkpoint_path_for, load_settings_or_exit


def checkpoint_show(config: Path | None = CONFIG_OPTION) -> None:
    """Print the stored offset for the configured bot."""
    settings = load_settings_or_exit(config)
    store = JsonCheckpointStore(checkpoint_path_for(settings))
    try:
        offset = anyio.run(store.get, checkpoint_key(settings.bot_token))
    except CheckpointError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo("none" if offset is None else str(offset))


def checkpoint_reset(
    config: Path | None = CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Forget the stored offset; the next run starts from the source default."""
    settings = load_settings_or_exit(config)
    if not yes and not typer.confirm("reset the stored offset?", default=False):
        raise typer.Exit(code=1)
    store = JsonCheckpointStore(checkpoint_path_for(settings))
    try:
        removed = anyio.run(store.delete, checkpoint_key(settings.bot_token))
    except CheckpointError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo("checkpoint reset" if removed else "no checkpoint stored")

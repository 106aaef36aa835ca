from __future__ import annotations

from pathlib import Path

import typer

from ..checkpoint import resolve_checkpoint_path
from ..config import ConfigError, TeleplaySettings, load_settings

CONFIG_OPTION = typer.Option(
    None, "--config", help="Path to teleplay.toml (default: .teleplay or ~/.teleplay)."
)


def load_settings_or_exit(config: Path | None) -> TeleplaySettings:
    try:
        return load_settings(config)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


def checkpoint_path_for(settings: TeleplaySettings) -> Path:
    return settings.checkpoint_path or resolve_checkpoint_path(settings.config_path)

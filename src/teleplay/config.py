from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .model import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_CONCURRENCY,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_POLL_TIMEOUT_S,
)

# Environment variable names for secrets and overrides
ENV_BOT_TOKEN = "TELEPLAY_BOT_TOKEN"
ENV_CONCURRENCY = "TELEPLAY_CONCURRENCY"

LOCAL_CONFIG_NAME = Path(".teleplay") / "teleplay.toml"
HOME_CONFIG_PATH = Path.home() / ".teleplay" / "teleplay.toml"

DEFAULT_HANDLER = "teleplay.handlers:echo"
MAX_BATCH_LIMIT = 100


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class TeleplaySettings:
    config_path: Path
    bot_token: str
    concurrency: int = DEFAULT_CONCURRENCY
    batch_limit: int = DEFAULT_BATCH_LIMIT
    poll_timeout: int = DEFAULT_POLL_TIMEOUT_S
    poll_interval: float = DEFAULT_POLL_INTERVAL_S
    handler_timeout: float | None = None
    handler: str = DEFAULT_HANDLER
    checkpoint_path: Path | None = None
    event_log: Path | None = None


def _config_candidates() -> list[Path]:
    candidates = [Path.cwd() / LOCAL_CONFIG_NAME, HOME_CONFIG_PATH]
    if candidates[0] == candidates[1]:
        return [candidates[0]]
    return candidates


def _read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def load_config(path: str | Path | None = None) -> tuple[dict, Path]:
    if path:
        cfg_path = Path(path).expanduser()
        return _read_config(cfg_path), cfg_path

    for candidate in _config_candidates():
        if candidate.is_file():
            return _read_config(candidate), candidate

    raise ConfigError(
        f"Missing teleplay config. Create {LOCAL_CONFIG_NAME} or {HOME_CONFIG_PATH}."
    )


def get_bot_token(config: dict, config_path: Path) -> str:
    """Get bot token from environment variable or config file.

    Environment variable TELEPLAY_BOT_TOKEN takes precedence over config file.
    """
    env_token = os.environ.get(ENV_BOT_TOKEN)
    if env_token and env_token.strip():
        return env_token.strip()

    try:
        token = config["bot_token"]
    except KeyError:
        raise ConfigError(
            f"Missing bot token. Set {ENV_BOT_TOKEN} environment variable "
            f"or add `bot_token` to {config_path}."
        ) from None

    if not isinstance(token, str) or not token.strip():
        raise ConfigError(
            f"Invalid `bot_token` in {config_path}; expected a non-empty string."
        )
    return token.strip()


def get_concurrency(config: dict, config_path: Path) -> int:
    env_value = os.environ.get(ENV_CONCURRENCY)
    if env_value and env_value.strip():
        try:
            value = int(env_value.strip())
        except ValueError:
            raise ConfigError(
                f"Invalid {ENV_CONCURRENCY} environment variable; expected an integer."
            ) from None
        if value < 1:
            raise ConfigError(f"Invalid {ENV_CONCURRENCY}; expected an integer >= 1.")
        return value
    return _get_int(config, config_path, "concurrency", DEFAULT_CONCURRENCY, minimum=1)


def _get_int(
    config: dict,
    config_path: Path,
    key: str,
    default: int,
    *,
    minimum: int,
    maximum: int | None = None,
) -> int:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected an integer.")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f">= {minimum}" if maximum is None else f"in {minimum}..{maximum}"
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected {bound}.")
    return value


def _get_seconds(
    config: dict, config_path: Path, key: str, default: float | None
) -> float | None:
    value = config.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected a number.")
    if value < 0:
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected >= 0.")
    return float(value)


def _get_path(config: dict, config_path: Path, key: str) -> Path | None:
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected a path string.")
    path = Path(value.strip()).expanduser()
    if not path.is_absolute():
        path = config_path.parent / path
    return path


def _get_handler(config: dict, config_path: Path) -> str:
    value: Any = config.get("handler", DEFAULT_HANDLER)
    if not isinstance(value, str) or ":" not in value:
        raise ConfigError(
            f"Invalid `handler` in {config_path}; expected 'module:attribute'."
        )
    return value.strip()


def parse_settings(config: dict, config_path: Path) -> TeleplaySettings:
    handler_timeout = _get_seconds(config, config_path, "handler_timeout", None)
    if handler_timeout is not None and handler_timeout == 0:
        raise ConfigError(
            f"Invalid `handler_timeout` in {config_path}; expected > 0."
        )
    poll_interval = _get_seconds(
        config, config_path, "poll_interval", DEFAULT_POLL_INTERVAL_S
    )
    return TeleplaySettings(
        config_path=config_path,
        bot_token=get_bot_token(config, config_path),
        concurrency=get_concurrency(config, config_path),
        batch_limit=_get_int(
            config,
            config_path,
            "batch_limit",
            DEFAULT_BATCH_LIMIT,
            minimum=1,
            maximum=MAX_BATCH_LIMIT,
        ),
        poll_timeout=_get_int(
            config, config_path, "poll_timeout", DEFAULT_POLL_TIMEOUT_S, minimum=0
        ),
        poll_interval=(
            DEFAULT_POLL_INTERVAL_S if poll_interval is None else poll_interval
        ),
        handler_timeout=handler_timeout,
        handler=_get_handler(config, config_path),
        checkpoint_path=_get_path(config, config_path, "checkpoint_path"),
        event_log=_get_path(config, config_path, "event_log"),
    )


def load_settings(path: str | Path | None = None) -> TeleplaySettings:
    config, config_path = load_config(path)
    return parse_settings(config, config_path)

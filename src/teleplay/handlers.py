"""Handler resolution for the CLI and the default echo handler."""

from __future__ import annotations

import importlib

from .config import ConfigError
from .model import Handler, Update


async def echo(text: str, update: Update) -> str:
    return f"you said: {text}"


def load_handler(spec: str) -> Handler:
    """Import a handler from ``"package.module:attribute"``.

    The attribute may be a dotted path inside the module. Objects exposing an
    ``on_message`` callable are accepted as well.
    """
    module_name, sep, attr_path = spec.strip().partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigError(f"Invalid handler {spec!r}; expected 'module:attribute'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Failed to import handler module {module_name!r}: {exc}") from exc
    target: object = module
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise ConfigError(
                f"Handler {spec!r} not found: {module_name!r} has no {attr_path!r}."
            ) from None
    on_message = getattr(target, "on_message", None)
    if not isinstance(target, type) and callable(on_message):
        return on_message
    if not callable(target):
        raise ConfigError(f"Handler {spec!r} is not callable.")
    return target  # type: ignore[return-value]

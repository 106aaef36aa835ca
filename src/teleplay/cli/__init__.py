from __future__ import annotations

import signal
from functools import partial
from pathlib import Path

import anyio
import typer
from anyio import CancelScope

from .. import __version__
from ..checkpoint import JsonCheckpointStore, token_fingerprint
from ..config import ConfigError, TeleplaySettings
from ..event_log import EventLog
from ..handlers import load_handler
from ..lockfile import LockError, LockHandle, acquire_lock
from ..logging import get_logger, setup_logging
from ..loop import PollLoop
from ..model import BotSession, Handler, StopReason
from ..telegram.client import TelegramClient
from .checkpoint import checkpoint_reset, checkpoint_show
from .common import CONFIG_OPTION, checkpoint_path_for, load_settings_or_exit
from .events import events_tail

logger = get_logger(__name__)


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def acquire_checkpoint_lock(checkpoint_path: Path, token: str) -> LockHandle:
    try:
        return acquire_lock(
            checkpoint_path=checkpoint_path,
            token_fingerprint=token_fingerprint(token),
        )
    except LockError as exc:
        lines = str(exc).splitlines()
        if lines:
            typer.echo(lines[0], err=True)
            if len(lines) > 1:
                typer.echo("\n".join(lines[1:]), err=True)
        else:
            typer.echo("error: unknown error", err=True)
        raise typer.Exit(code=1) from exc


def build_session(
    settings: TeleplaySettings, handler: Handler, *, concurrency: int | None = None
) -> BotSession:
    return BotSession(
        token=settings.bot_token,
        handler=handler,
        concurrency_limit=concurrency or settings.concurrency,
        batch_limit=settings.batch_limit,
        poll_timeout_s=settings.poll_timeout,
        poll_interval_s=settings.poll_interval,
        handler_timeout_s=settings.handler_timeout,
    )


async def _stop_on_signal(loop: PollLoop, scope: CancelScope) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("shutdown.signal", signal=signal.Signals(signum).name)
            if not loop.stop():
                # Second signal: abandon the in-flight fetch.
                scope.cancel()
                return


async def serve(
    session: BotSession,
    *,
    checkpoint_path: Path,
    event_log: Path | None = None,
) -> StopReason:
    client = TelegramClient(session.token)
    store = JsonCheckpointStore(checkpoint_path)
    on_event = EventLog(event_log) if event_log is not None else None
    loop = PollLoop(session, client, store, on_event=on_event)
    reason = StopReason.REQUESTED
    try:
        async with anyio.create_task_group() as tg:

            async def _run() -> None:
                nonlocal reason
                reason = await loop.run()
                tg.cancel_scope.cancel()

            tg.start_soon(_stop_on_signal, loop, tg.cancel_scope)
            tg.start_soon(_run)
    finally:
        await client.close()
    return reason


def run(
    config: Path | None = CONFIG_OPTION,
    handler: str | None = typer.Option(
        None, "--handler", help="Handler as 'module:attribute' (overrides config)."
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", min=1, help="Maximum handlers in flight."
    ),
    debug: bool = typer.Option(
        False, "--debug/--no-debug", help="Verbose console logging."
    ),
) -> None:
    """Poll for messages and answer them until interrupted."""
    setup_logging(debug=debug)
    settings = load_settings_or_exit(config)
    try:
        bot_handler = load_handler(handler or settings.handler)
        session = build_session(settings, bot_handler, concurrency=concurrency)
    except (ConfigError, ValueError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    checkpoint_path = checkpoint_path_for(settings)
    with acquire_checkpoint_lock(checkpoint_path, settings.bot_token):
        reason = anyio.run(
            partial(
                serve,
                session,
                checkpoint_path=checkpoint_path,
                event_log=settings.event_log,
            )
        )
    if reason is StopReason.FATAL:
        typer.echo("error: stopped after a fatal error (see log)", err=True)
        raise typer.Exit(code=1)


def app_main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Teleplay: answer Telegram messages with a Python handler."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def create_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=False,
        invoke_without_command=True,
        help="Checkpointed long-poll bot runner.",
    )
    checkpoint_app = typer.Typer(help="Inspect or reset the stored offset.")
    checkpoint_app.command(name="show")(checkpoint_show)
    checkpoint_app.command(name="reset")(checkpoint_reset)
    app.command(name="run")(run)
    app.command(name="events")(events_tail)
    app.add_typer(checkpoint_app, name="checkpoint")
    app.callback()(app_main)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence

import anyio

from .checkpoint import CheckpointStore, checkpoint_key
from .dispatcher import dispatch
from .errors import CheckpointError, FatalError, RetryAfter, TransientError
from .lifecycle import Lifecycle
from .logging import get_logger
from .model import (
    BotSession,
    CheckpointAdvanced,
    HandlerFailed,
    LifecycleState,
    LoopEvent,
    LoopStopped,
    MessageHandled,
    MessageResult,
    Replied,
    SendFailed,
    StateChanged,
    StopReason,
    Update,
)
from .telegram.client import MessageSource

logger = get_logger(__name__)

__all__ = ["PollLoop", "next_offset"]

EventCallback = Callable[[LoopEvent], None]


def next_offset(batch: Sequence[Update]) -> int | None:
    if not batch:
        return None
    return max(update.update_id for update in batch) + 1


class PollLoop:
    """Fetch, dispatch, checkpoint and wait until the lifecycle says stop."""

    def __init__(
        self,
        session: BotSession,
        source: MessageSource,
        store: CheckpointStore,
        *,
        lifecycle: Lifecycle | None = None,
        on_event: EventCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._session = session
        self._source = source
        self._store = store
        self._key = checkpoint_key(session.token)
        self._on_event = on_event
        self._sleep = sleep
        self.lifecycle = lifecycle or Lifecycle()
        self.lifecycle.add_listener(self._state_changed)
        self.iterations = 0

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    def stop(self) -> bool:
        return self.lifecycle.stop()

    def _emit(self, event: LoopEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as exc:
            logger.error(
                "loop.event_callback_failed",
                event_type=type(event).__name__,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    def _state_changed(
        self, previous: LifecycleState, current: LifecycleState
    ) -> None:
        self._emit(StateChanged(previous=previous, current=current))

    async def run(self) -> StopReason:
        if not self.lifecycle.start():
            logger.info("loop.already_running", state=self.lifecycle.state.value)
            return StopReason.REQUESTED
        logger.info(
            "loop.started",
            concurrency=self._session.concurrency_limit,
            batch_limit=self._session.batch_limit,
            poll_timeout=self._session.poll_timeout_s,
        )
        try:
            while True:
                if self.lifecycle.state is not LifecycleState.STARTED:
                    self._finish(StopReason.REQUESTED)
                    return StopReason.REQUESTED
                try:
                    delay = await self._iterate()
                except FatalError as exc:
                    logger.error("loop.fatal_error", error=str(exc))
                    self._finish(StopReason.FATAL, str(exc))
                    return StopReason.FATAL
                await self._wait(delay)
        finally:
            # Unexpected errors and cancellation must not leave the cell running.
            if self.lifecycle.mark_stopped():
                logger.warning("loop.aborted")

    def _finish(self, reason: StopReason, error: str | None = None) -> None:
        self.lifecycle.mark_stopped()
        logger.info("loop.stopped", reason=reason.value, iterations=self.iterations)
        self._emit(LoopStopped(reason=reason, error=error))

    async def _iterate(self) -> float:
        """Run one fetch/dispatch/checkpoint pass and return the delay to wait."""
        self.iterations += 1
        session = self._session
        try:
            offset = await self._store.get(self._key)
        except CheckpointError as exc:
            logger.error("loop.checkpoint_read_failed", error=str(exc))
            return session.poll_interval_s

        logger.debug("loop.fetch", offset=offset)
        try:
            batch = await self._source.fetch_updates(
                offset, session.batch_limit, session.poll_timeout_s
            )
        except RetryAfter as exc:
            logger.warning(
                "loop.fetch_rate_limited", offset=offset, retry_after=exc.retry_after
            )
            return max(session.poll_interval_s, exc.retry_after)
        except TransientError as exc:
            logger.warning("loop.fetch_failed", offset=offset, error=str(exc))
            return session.poll_interval_s

        if not batch:
            logger.debug("loop.empty_batch", offset=offset)
            return session.poll_interval_s

        dispatchable = [update for update in batch if update.dispatchable]
        results = await dispatch(
            dispatchable,
            session.handler,
            session.concurrency_limit,
            send=self._source.send_reply,
            handler_timeout_s=session.handler_timeout_s,
        )
        for result in results:
            self._report(result)

        await self._advance(offset, batch)
        return session.poll_interval_s

    def _report(self, result: MessageResult) -> None:
        update = result.update
        outcome = result.outcome
        if isinstance(outcome, Replied):
            logger.debug(
                "dispatch.replied", update_id=update.update_id, chat_id=update.chat_id
            )
        elif isinstance(outcome, HandlerFailed):
            logger.warning(
                "dispatch.handler_failed",
                update_id=update.update_id,
                chat_id=update.chat_id,
                reason=outcome.reason,
            )
        elif isinstance(outcome, SendFailed):
            logger.warning(
                "dispatch.send_failed",
                update_id=update.update_id,
                chat_id=update.chat_id,
                reason=outcome.reason,
            )
        self._emit(MessageHandled(result=result))

    async def _advance(self, offset: int | None, batch: Sequence[Update]) -> None:
        new_offset = next_offset(batch)
        if new_offset is None:
            return
        if offset is not None and new_offset <= offset:
            logger.warning(
                "loop.offset_regression", offset=offset, next_offset=new_offset
            )
            return
        try:
            await self._store.set(self._key, new_offset)
        except CheckpointError as exc:
            logger.error(
                "loop.checkpoint_write_failed", offset=new_offset, error=str(exc)
            )
            return
        logger.debug("loop.checkpoint_advanced", offset=new_offset)
        self._emit(CheckpointAdvanced(offset=new_offset))

    async def _wait(self, delay: float) -> None:
        if delay <= 0:
            await anyio.sleep(0)
            return
        if self._sleep is not None:
            await self._sleep(delay)
            return
        with anyio.move_on_after(delay):
            await self.lifecycle.wait_stop_requested()

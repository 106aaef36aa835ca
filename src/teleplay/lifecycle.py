"""Start/stop state cell shared by the poll loop and its controller."""

from __future__ import annotations

from collections.abc import Callable

import anyio

from .logging import get_logger
from .model import LifecycleState

logger = get_logger(__name__)

StateCallback = Callable[[LifecycleState, LifecycleState], None]


class Lifecycle:
    """Three-state machine gating the poll loop.

    ``start()`` and ``stop()`` are the only transitions available to
    callers; the loop itself performs the terminal ``mark_stopped()``.
    All methods must be called from the event loop thread; other threads
    go through ``anyio.from_thread.run_sync(lifecycle.stop)``.
    """

    def __init__(self, *, on_change: StateCallback | None = None) -> None:
        self._state = LifecycleState.STOPPED
        self._listeners: list[StateCallback] = []
        if on_change is not None:
            self._listeners.append(on_change)
        self._stop_requested = anyio.Event()
        self._stopped = anyio.Event()
        self._stopped.set()

    def add_listener(self, listener: StateCallback) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is not LifecycleState.STOPPED

    def start(self) -> bool:
        if self._state is not LifecycleState.STOPPED:
            return False
        self._stop_requested = anyio.Event()
        self._stopped = anyio.Event()
        self._transition(LifecycleState.STARTED)
        return True

    def stop(self) -> bool:
        if self._state is not LifecycleState.STARTED:
            return False
        self._transition(LifecycleState.STOPPING)
        self._stop_requested.set()
        return True

    def mark_stopped(self) -> bool:
        if self._state is LifecycleState.STOPPED:
            return False
        self._transition(LifecycleState.STOPPED)
        self._stop_requested.set()
        self._stopped.set()
        return True

    async def wait_stop_requested(self) -> None:
        if self._state is not LifecycleState.STARTED:
            return
        await self._stop_requested.wait()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def _transition(self, new: LifecycleState) -> None:
        previous = self._state
        self._state = new
        logger.info(
            "lifecycle.transition", previous=previous.value, current=new.value
        )
        for listener in list(self._listeners):
            try:
                listener(previous, new)
            except Exception as exc:
                logger.error(
                    "lifecycle.listener_failed",
                    previous=previous.value,
                    current=new.value,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )

"""Teleplay domain model types (updates, sessions, outcomes, loop events)."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

DEFAULT_CONCURRENCY = 5
DEFAULT_BATCH_LIMIT = 10
DEFAULT_POLL_TIMEOUT_S = 10
DEFAULT_POLL_INTERVAL_S = 5.0


class LifecycleState(enum.StrEnum):
    STOPPED = "stopped"
    STARTED = "started"
    STOPPING = "stopping"


class StopReason(enum.StrEnum):
    REQUESTED = "requested"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class Update:
    update_id: int
    chat_id: int | None = None
    text: str | None = None
    message_id: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def dispatchable(self) -> bool:
        return bool(self.text) and self.chat_id is not None


Handler: TypeAlias = Callable[[str, Update], str | Awaitable[str]]


@dataclass(frozen=True, slots=True)
class BotSession:
    token: str
    handler: Handler
    concurrency_limit: int = DEFAULT_CONCURRENCY
    batch_limit: int = DEFAULT_BATCH_LIMIT
    poll_timeout_s: int = DEFAULT_POLL_TIMEOUT_S
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    handler_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("bot token is empty")
        if self.concurrency_limit < 1:
            raise ValueError(
                f"concurrency_limit must be >= 1, got {self.concurrency_limit}"
            )
        if self.batch_limit < 1:
            raise ValueError(f"batch_limit must be >= 1, got {self.batch_limit}")
        if self.poll_timeout_s < 0:
            raise ValueError("poll_timeout_s must be >= 0")
        if self.poll_interval_s < 0:
            raise ValueError("poll_interval_s must be >= 0")
        if self.handler_timeout_s is not None and self.handler_timeout_s <= 0:
            raise ValueError("handler_timeout_s must be > 0")


@dataclass(frozen=True, slots=True)
class Replied:
    text: str


@dataclass(frozen=True, slots=True)
class HandlerFailed:
    reason: str


@dataclass(frozen=True, slots=True)
class SendFailed:
    reason: str


Outcome: TypeAlias = Replied | HandlerFailed | SendFailed


@dataclass(frozen=True, slots=True)
class MessageResult:
    update: Update
    outcome: Outcome

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Replied)


@dataclass(frozen=True, slots=True)
class StateChanged:
    previous: LifecycleState
    current: LifecycleState


@dataclass(frozen=True, slots=True)
class MessageHandled:
    result: MessageResult


@dataclass(frozen=True, slots=True)
class CheckpointAdvanced:
    offset: int


@dataclass(frozen=True, slots=True)
class LoopStopped:
    reason: StopReason
    error: str | None = None


LoopEvent: TypeAlias = StateChanged | MessageHandled | CheckpointAdvanced | LoopStopped

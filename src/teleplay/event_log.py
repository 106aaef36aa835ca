from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import msgspec

from .logging import _redact_text, _redact_value, get_logger
from .model import (
    CheckpointAdvanced,
    HandlerFailed,
    LoopEvent,
    LoopStopped,
    MessageHandled,
    Replied,
    SendFailed,
    StateChanged,
)

logger = get_logger(__name__)

DEFAULT_MAX_TEXT_CHARS = 500


@dataclass(frozen=True, slots=True)
class TeleplayLogEvent:
    ts: str
    kind: str
    update_id: int | None
    chat_id: int | None
    text: str
    meta: dict[str, Any]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 1] + "…"


def _write_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "ab") as handle:
        handle.write(msgspec.json.encode(payload) + b"\n")


def to_log_event(event: LoopEvent, *, max_text_chars: int) -> TeleplayLogEvent:
    update_id: int | None = None
    chat_id: int | None = None
    text = ""
    meta: dict[str, Any] = {}
    if isinstance(event, MessageHandled):
        update = event.result.update
        outcome = event.result.outcome
        update_id = update.update_id
        chat_id = update.chat_id
        text = update.text or ""
        if isinstance(outcome, Replied):
            kind = "message.replied"
            meta["reply"] = _truncate(_redact_text(outcome.text), max_text_chars)
        elif isinstance(outcome, HandlerFailed):
            kind = "message.handler_failed"
            meta["reason"] = outcome.reason
        elif isinstance(outcome, SendFailed):
            kind = "message.send_failed"
            meta["reason"] = outcome.reason
    elif isinstance(event, CheckpointAdvanced):
        kind = "checkpoint.advanced"
        meta["offset"] = event.offset
    elif isinstance(event, StateChanged):
        kind = "lifecycle.changed"
        meta["previous"] = event.previous.value
        meta["current"] = event.current.value
    elif isinstance(event, LoopStopped):
        kind = "loop.stopped"
        meta["reason"] = event.reason.value
        if event.error is not None:
            meta["error"] = event.error
    else:
        raise TypeError(f"unsupported loop event {type(event).__name__}")
    return TeleplayLogEvent(
        ts=_utc_now(),
        kind=kind,
        update_id=update_id,
        chat_id=chat_id,
        text=_truncate(_redact_text(text), max_text_chars),
        meta=meta,
    )


class EventLog:
    """Appends loop events to a JSONL file, one object per line."""

    def __init__(self, path: Path, *, max_text_chars: int = DEFAULT_MAX_TEXT_CHARS):
        self.path = path
        self.max_text_chars = max_text_chars

    def __call__(self, event: LoopEvent) -> None:
        record = to_log_event(event, max_text_chars=self.max_text_chars)
        payload = _redact_value(asdict(record), memo={})
        try:
            _write_jsonl(self.path, payload)
        except OSError as exc:
            logger.error("event_log.write_failed", path=str(self.path), error=str(exc))


def read_events_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in path.read_bytes().splitlines():
        if not line.strip():
            continue
        try:
            item = msgspec.json.decode(line)
        except msgspec.DecodeError:
            continue
        if isinstance(item, dict):
            events.append(item)
    return events

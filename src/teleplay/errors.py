from __future__ import annotations


class TeleplayError(Exception):
    pass


class TransientError(TeleplayError):
    """Retryable failure talking to the message source."""


class RetryAfter(TransientError):
    def __init__(self, retry_after: float, description: str | None = None) -> None:
        super().__init__(description or f"retry after {retry_after}")
        self.retry_after = float(retry_after)
        self.description = description


class FatalError(TeleplayError):
    """Non-retryable failure; the poll loop stops when it sees one."""


class CheckpointError(TeleplayError):
    pass

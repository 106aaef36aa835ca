from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Sequence
from functools import partial

import anyio

from .logging import get_logger
from .model import (
    Handler,
    HandlerFailed,
    MessageResult,
    Outcome,
    Replied,
    SendFailed,
    Update,
)

logger = get_logger(__name__)

SendReply = Callable[[int, str], Awaitable[None]]

__all__ = ["SendReply", "dispatch"]


def _reason(exc: BaseException) -> str:
    message = str(exc)
    if not message:
        return exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"


def _is_async_handler(handler: Handler) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    return inspect.iscoroutinefunction(getattr(handler, "__call__", None))


async def _call_handler(handler: Handler, update: Update) -> str:
    text = update.text or ""
    if _is_async_handler(handler):
        result = await handler(text, update)
    else:
        # The thread is never abandoned, so its slot stays taken until it returns.
        result = await anyio.to_thread.run_sync(partial(handler, text, update))
        # A timeout that expired while the thread ran is raised here.
        await anyio.sleep(0)
        if inspect.isawaitable(result):
            result = await result
    if not isinstance(result, str):
        raise TypeError(f"handler returned {type(result).__name__}, expected str")
    return result


async def _dispatch_one(
    update: Update,
    handler: Handler,
    *,
    send: SendReply,
    limiter: anyio.CapacityLimiter,
    handler_timeout_s: float | None,
) -> Outcome:
    async with limiter:
        try:
            if handler_timeout_s is None:
                reply = await _call_handler(handler, update)
            else:
                with anyio.fail_after(handler_timeout_s):
                    reply = await _call_handler(handler, update)
        except Exception as exc:
            return HandlerFailed(_reason(exc))
        if update.chat_id is None:
            return SendFailed("update has no chat to reply to")
        try:
            await send(update.chat_id, reply)
        except Exception as exc:
            return SendFailed(_reason(exc))
        return Replied(reply)


async def dispatch(
    batch: Sequence[Update],
    handler: Handler,
    concurrency_limit: int,
    *,
    send: SendReply,
    handler_timeout_s: float | None = None,
) -> list[MessageResult]:
    """Run ``handler`` for every update and send each reply.

    At most ``concurrency_limit`` updates are in flight at once. Results come
    back in batch order. Handler and send failures are reported per update
    and never raised.
    """
    if concurrency_limit < 1:
        raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")
    if not batch:
        return []
    limiter = anyio.CapacityLimiter(concurrency_limit)
    results_by_index: dict[int, MessageResult] = {}

    async def run(index: int, update: Update) -> None:
        outcome = await _dispatch_one(
            update,
            handler,
            send=send,
            limiter=limiter,
            handler_timeout_s=handler_timeout_s,
        )
        results_by_index[index] = MessageResult(update=update, outcome=outcome)

    async with anyio.create_task_group() as tg:
        for index, update in enumerate(batch):
            tg.start_soon(run, index, update)

    results = [results_by_index[index] for index in range(len(batch))]
    logger.debug(
        "dispatch.batch_done",
        count=len(results),
        failed=sum(1 for result in results if not result.ok),
    )
    return results

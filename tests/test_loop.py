import anyio
import pytest

from teleplay.checkpoint import MemoryCheckpointStore, checkpoint_key
from teleplay.errors import FatalError, RetryAfter, TransientError
from teleplay.lifecycle import Lifecycle
from teleplay.loop import PollLoop, next_offset
from teleplay.model import (
    CheckpointAdvanced,
    HandlerFailed,
    LifecycleState,
    LoopStopped,
    MessageHandled,
    Replied,
    StateChanged,
    StopReason,
    Update,
)
from tests.fakes import TOKEN, FakeSource, FlakyStore, StopAfter, make_update

KEY = checkpoint_key(TOKEN)


def _loop(session, source, store, *, stop_after: int = 1, **kwargs) -> tuple[PollLoop, StopAfter]:
    sleep = StopAfter(stop_after)
    loop = PollLoop(session, source, store, sleep=sleep, **kwargs)
    sleep.stop = loop.stop
    return loop, sleep


def test_next_offset() -> None:
    assert next_offset([]) is None
    assert next_offset([make_update(3), make_update(9), make_update(4)]) == 10


@pytest.mark.anyio
async def test_batch_with_gap_sets_checkpoint_past_max(make_session) -> None:
    source = FakeSource([make_update(7, "hi"), make_update(9, "yo")])
    store = MemoryCheckpointStore()
    loop, _ = _loop(make_session(), source, store)

    reason = await loop.run()

    assert reason is StopReason.REQUESTED
    assert store.offsets[KEY] == 10
    assert sorted(source.sent) == [(42, "you said: hi"), (42, "you said: yo")]


@pytest.mark.anyio
async def test_updates_without_text_advance_offset_but_are_not_dispatched(
    make_session,
) -> None:
    seen: list[int] = []

    async def handler(text: str, update: Update) -> str:
        seen.append(update.update_id)
        return text

    source = FakeSource([make_update(7), make_update(8, text=None), make_update(9)])
    store = MemoryCheckpointStore()
    loop, _ = _loop(make_session(handler), source, store)

    await loop.run()

    assert sorted(seen) == [7, 9]
    assert store.offsets[KEY] == 10


@pytest.mark.anyio
async def test_empty_long_poll_writes_no_checkpoint(make_session) -> None:
    source = FakeSource()
    store = MemoryCheckpointStore()
    loop, sleep = _loop(make_session(poll_interval_s=5.0), source, store, stop_after=2)

    await loop.run()

    assert len(source.fetches) == 2
    assert store.writes == []
    assert KEY not in store.offsets
    assert sleep.delays == [5.0, 5.0]


@pytest.mark.anyio
async def test_first_fetch_uses_source_default_offset(make_session) -> None:
    source = FakeSource()
    loop, _ = _loop(make_session(batch_limit=10, poll_timeout_s=10), source, MemoryCheckpointStore())

    await loop.run()

    assert source.fetches == [(None, 10, 10)]


@pytest.mark.anyio
async def test_resume_from_persisted_offset_skips_older_updates(make_session) -> None:
    seen: list[int] = []

    async def handler(text: str, update: Update) -> str:
        seen.append(update.update_id)
        return text

    source = FakeSource([make_update(1), make_update(2), make_update(3)])
    store = MemoryCheckpointStore({KEY: 3})
    loop, _ = _loop(make_session(handler), source, store)

    await loop.run()

    assert source.fetches[0][0] == 3
    assert seen == [3]
    assert store.offsets[KEY] == 4


@pytest.mark.anyio
async def test_checkpoint_is_monotonic_across_batches(make_session) -> None:
    updates = [make_update(i) for i in range(1, 12)]
    source = FakeSource(updates)
    store = MemoryCheckpointStore()
    loop, _ = _loop(make_session(batch_limit=3), source, store, stop_after=6)

    await loop.run()

    offsets = [offset for _, offset in store.writes]
    assert offsets == sorted(offsets)
    assert offsets == [4, 7, 10, 12]
    assert len(source.sent) == 11


@pytest.mark.anyio
async def test_regressing_batch_is_not_persisted(make_session) -> None:
    class StaleSource(FakeSource):
        async def fetch_updates(self, offset, limit, timeout_s):
            self.fetches.append((offset, limit, timeout_s))
            return [make_update(2)]

    store = MemoryCheckpointStore({KEY: 10})
    loop, _ = _loop(make_session(), StaleSource(), store)

    await loop.run()

    assert store.offsets[KEY] == 10
    assert store.writes == []


@pytest.mark.anyio
async def test_handler_failure_is_isolated(make_session) -> None:
    async def handler(text: str, update: Update) -> str:
        if update.update_id == 5:
            raise RuntimeError("boom")
        return f"ok {update.update_id}"

    events: list = []
    source = FakeSource([make_update(i, chat_id=i) for i in range(3, 8)])
    store = MemoryCheckpointStore()
    loop, _ = _loop(make_session(handler), source, store, on_event=events.append)

    await loop.run()

    assert sorted(source.sent) == [(3, "ok 3"), (4, "ok 4"), (6, "ok 6"), (7, "ok 7")]
    assert store.offsets[KEY] == 8
    handled = [e.result for e in events if isinstance(e, MessageHandled)]
    assert [r.update.update_id for r in handled] == [3, 4, 5, 6, 7]
    assert handled[2].outcome == HandlerFailed("RuntimeError: boom")


@pytest.mark.anyio
async def test_send_failure_still_advances_checkpoint(make_session) -> None:
    source = FakeSource([make_update(1, chat_id=1), make_update(2, chat_id=2)])
    source.send_errors[1] = TransientError("sendMessage: HTTP 500")
    store = MemoryCheckpointStore()
    events: list = []
    loop, _ = _loop(make_session(), source, store, on_event=events.append)

    await loop.run()

    assert store.offsets[KEY] == 3
    outcomes = [e.result.outcome for e in events if isinstance(e, MessageHandled)]
    assert outcomes[0].reason == "TransientError: sendMessage: HTTP 500"
    assert outcomes[1] == Replied("you said: hi")


@pytest.mark.anyio
async def test_fatal_error_stops_without_retry(make_session) -> None:
    source = FakeSource([make_update(1)])
    source.fail_next(FatalError("getUpdates: HTTP 401 (bot token rejected)"))
    store = MemoryCheckpointStore()
    events: list = []
    loop, sleep = _loop(make_session(), source, store, stop_after=5, on_event=events.append)

    reason = await loop.run()

    assert reason is StopReason.FATAL
    assert loop.state is LifecycleState.STOPPED
    assert len(source.fetches) == 1
    assert store.writes == []
    assert sleep.delays == []
    assert events[-1] == LoopStopped(
        reason=StopReason.FATAL, error="getUpdates: HTTP 401 (bot token rejected)"
    )


@pytest.mark.anyio
async def test_transient_fetch_error_retries_after_delay(make_session) -> None:
    source = FakeSource([make_update(1)])
    source.fail_next(TransientError("network down"))
    store = MemoryCheckpointStore()
    loop, sleep = _loop(make_session(poll_interval_s=2.0), source, store, stop_after=2)

    await loop.run()

    assert len(source.fetches) == 2
    assert sleep.delays == [2.0, 2.0]
    assert store.writes == [(KEY, 2)]


@pytest.mark.anyio
async def test_retry_after_extends_delay(make_session) -> None:
    source = FakeSource()
    source.fail_next(RetryAfter(30))
    loop, sleep = _loop(make_session(poll_interval_s=5.0), source, MemoryCheckpointStore())

    await loop.run()

    assert sleep.delays == [30.0]


@pytest.mark.anyio
async def test_checkpoint_write_failure_redelivers(make_session) -> None:
    seen: list[int] = []

    async def handler(text: str, update: Update) -> str:
        seen.append(update.update_id)
        return text

    source = FakeSource([make_update(1)])
    store = FlakyStore(fail_sets=1)
    loop, _ = _loop(make_session(handler), source, store, stop_after=2)

    await loop.run()

    assert seen == [1, 1]
    assert store.offsets[KEY] == 2
    assert loop.state is LifecycleState.STOPPED


@pytest.mark.anyio
async def test_checkpoint_read_failure_skips_fetch(make_session) -> None:
    source = FakeSource([make_update(1)])
    store = FlakyStore(fail_gets=1)
    loop, sleep = _loop(make_session(), source, store, stop_after=2)

    await loop.run()

    assert len(source.fetches) == 1
    assert len(sleep.delays) == 2
    assert store.offsets[KEY] == 2


@pytest.mark.anyio
async def test_stop_mid_iteration_finishes_iteration_then_stops(make_session) -> None:
    holder: dict[str, PollLoop] = {}

    async def handler(text: str, update: Update) -> str:
        holder["loop"].stop()
        return text

    source = FakeSource([make_update(1), make_update(2)])
    store = MemoryCheckpointStore()
    loop = PollLoop(make_session(handler, poll_interval_s=60.0), source, store)
    holder["loop"] = loop

    with anyio.fail_after(5):
        reason = await loop.run()

    assert reason is StopReason.REQUESTED
    assert loop.state is LifecycleState.STOPPED
    assert len(source.fetches) == 1
    assert store.offsets[KEY] == 3
    assert len(source.sent) == 2


@pytest.mark.anyio
async def test_stop_interrupts_inter_iteration_delay(make_session) -> None:
    source = FakeSource()
    loop = PollLoop(make_session(poll_interval_s=3600.0), source, MemoryCheckpointStore())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(loop.run)
            while not source.fetches:
                await anyio.sleep(0)
            await anyio.sleep(0.01)
            assert loop.stop()

    assert loop.state is LifecycleState.STOPPED
    assert len(source.fetches) == 1


@pytest.mark.anyio
async def test_run_while_running_is_noop(make_session) -> None:
    source = FakeSource()
    loop = PollLoop(make_session(poll_interval_s=3600.0), source, MemoryCheckpointStore())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(loop.run)
            while not source.fetches:
                await anyio.sleep(0)
            assert await loop.run() is StopReason.REQUESTED
            assert loop.state is LifecycleState.STARTED
            loop.stop()

    assert len(source.fetches) == 1


@pytest.mark.anyio
async def test_events_report_transitions_and_outcomes(make_session) -> None:
    events: list = []
    source = FakeSource([make_update(1)])
    loop, _ = _loop(make_session(), source, MemoryCheckpointStore(), on_event=events.append)

    await loop.run()

    assert events == [
        StateChanged(LifecycleState.STOPPED, LifecycleState.STARTED),
        MessageHandled(events[1].result),
        CheckpointAdvanced(offset=2),
        StateChanged(LifecycleState.STARTED, LifecycleState.STOPPING),
        StateChanged(LifecycleState.STOPPING, LifecycleState.STOPPED),
        LoopStopped(reason=StopReason.REQUESTED),
    ]
    assert events[1].result.outcome == Replied("you said: hi")


@pytest.mark.anyio
async def test_event_callback_errors_are_ignored(make_session) -> None:
    def on_event(event) -> None:
        raise ValueError("bad subscriber")

    source = FakeSource([make_update(1)])
    store = MemoryCheckpointStore()
    loop, _ = _loop(make_session(), source, store, on_event=on_event)

    assert await loop.run() is StopReason.REQUESTED
    assert store.offsets[KEY] == 2
    assert loop.state is LifecycleState.STOPPED
    assert source.sent == [(42, "you said: hi")]


@pytest.mark.anyio
async def test_unexpected_error_leaves_lifecycle_stopped(make_session) -> None:
    class BrokenSource(FakeSource):
        async def fetch_updates(self, offset, limit, timeout_s):
            raise KeyError("bug")

    lifecycle = Lifecycle()
    loop = PollLoop(make_session(), BrokenSource(), MemoryCheckpointStore(), lifecycle=lifecycle)

    with pytest.raises(KeyError):
        await loop.run()

    assert lifecycle.state is LifecycleState.STOPPED


@pytest.mark.anyio
async def test_loop_can_restart_after_stop(make_session) -> None:
    source = FakeSource([make_update(1)])
    store = MemoryCheckpointStore()
    loop, sleep = _loop(make_session(), source, store)

    await loop.run()
    source.pending.append(make_update(5))
    sleep.delays.clear()
    await loop.run()

    assert [offset for _, offset in store.writes] == [2, 6]
    assert source.fetches[1][0] == 2

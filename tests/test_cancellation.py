import asyncio

import pytest

from cot_proxy.cancellation import CancellationContext
from cot_proxy.errors import RelayCancelledError


@pytest.mark.asyncio
async def test_run_returns_result_when_not_cancelled():
    ctx = CancellationContext()

    async def work():
        return 42

    assert await ctx.run(work()) == 42
    assert ctx.cancelled is False


@pytest.mark.asyncio
async def test_run_abandons_work_when_caller_disconnects():
    ctx = CancellationContext()
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    task = asyncio.create_task(ctx.run(slow()))
    await started.wait()
    ctx.trigger_disconnect()

    with pytest.raises(RelayCancelledError) as exc:
        await task
    assert exc.value.reason == CancellationContext.DISCONNECT
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_run_refuses_to_start_after_cancellation():
    ctx = CancellationContext()
    ctx.trigger_force_abort()

    async def work():
        return 1

    with pytest.raises(RelayCancelledError) as exc:
        await ctx.run(work())
    assert exc.value.reason == CancellationContext.FORCE_ABORT


def test_child_fires_with_parent_but_not_the_other_way():
    parent = CancellationContext()
    child = parent.child()

    other = parent.child()
    other.trigger_disconnect()
    assert other.cancelled is True
    assert parent.cancelled is False
    assert child.cancelled is False

    parent.trigger_force_abort()
    assert child.cancelled is True
    assert child.reason == CancellationContext.FORCE_ABORT


def test_first_reason_wins():
    ctx = CancellationContext()
    ctx.trigger_disconnect()
    ctx.trigger_force_abort()
    assert ctx.reason == CancellationContext.DISCONNECT


def test_child_of_cancelled_parent_starts_cancelled():
    parent = CancellationContext()
    parent.trigger_disconnect()
    assert parent.child().reason == CancellationContext.DISCONNECT


@pytest.mark.asyncio
async def test_guard_stops_iteration_on_cancellation():
    ctx = CancellationContext()
    never = asyncio.Event()

    async def chunks():
        yield b"one"
        await never.wait()
        yield b"two"

    guarded = ctx.guard(chunks())
    assert await guarded.__anext__() == b"one"

    pending = asyncio.create_task(guarded.__anext__())
    await asyncio.sleep(0)
    ctx.trigger_force_abort()
    with pytest.raises(RelayCancelledError):
        await pending


@pytest.mark.asyncio
async def test_guard_passes_every_item_through():
    ctx = CancellationContext()

    async def chunks():
        for c in (b"a", b"b", b"c"):
            yield c

    assert [c async for c in ctx.guard(chunks())] == [b"a", b"b", b"c"]


@pytest.mark.asyncio
async def test_watch_disconnect_triggers_on_disconnect():
    ctx = CancellationContext()
    polls = iter([False, False, True])

    async def is_disconnected():
        return next(polls)

    await asyncio.wait_for(ctx.watch_disconnect(is_disconnected, interval=0.01), timeout=2)
    assert ctx.reason == CancellationContext.DISCONNECT


@pytest.mark.asyncio
async def test_watch_disconnect_exits_on_force_abort():
    ctx = CancellationContext()

    async def is_disconnected():
        return False

    watcher = asyncio.create_task(ctx.watch_disconnect(is_disconnected, interval=5))
    await asyncio.sleep(0)
    ctx.trigger_force_abort()
    await asyncio.wait_for(watcher, timeout=2)
    assert ctx.reason == CancellationContext.FORCE_ABORT

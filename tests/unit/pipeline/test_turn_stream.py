"""Token queue and result future of ``TurnStream``."""

from __future__ import annotations

import asyncio

import pytest

from strategy_copilot.domain.models import Turn, TurnStatus
from strategy_copilot.pipeline.streaming import TurnStream

DONE = Turn(status=TurnStatus.CHAT_REPLY, assistant_message="done")


async def test_events_then_result() -> None:
    stream = TurnStream()

    async def producer(out: TurnStream) -> Turn:
        await out.emit("start")
        await out.emit("token", "hel")
        await out.emit("token", "lo")
        return DONE

    stream.start(producer)
    events = [event async for event in stream.events()]

    assert [event.type for event in events] == ["start", "token", "token", "end"]
    assert [event.seq for event in events] == [0, 1, 2, 3]
    assert await stream.result() is DONE


async def test_result_drains_a_full_queue_itself() -> None:
    stream = TurnStream(queue_size=1)

    async def producer(out: TurnStream) -> Turn:
        await out.emit("start")
        for index in range(10):
            await out.emit("token", str(index))
        await out.emit("end")
        return DONE

    stream.start(producer)

    assert await asyncio.wait_for(stream.result(), timeout=2) is DONE


async def test_producer_failure_surfaces_on_result_and_still_ends() -> None:
    stream = TurnStream()

    async def producer(out: TurnStream) -> Turn:
        await out.emit("start")
        raise RuntimeError("pipeline broke")

    stream.start(producer)
    events = [event.type async for event in stream.events()]

    assert events == ["start", "end"]
    with pytest.raises(RuntimeError, match="pipeline broke"):
        await stream.result()


async def test_emit_after_end_and_double_start_are_rejected() -> None:
    stream = TurnStream()
    await stream.emit("end")

    with pytest.raises(RuntimeError):
        await stream.emit("token", "late")

    async def producer(out: TurnStream) -> Turn:
        return DONE

    stream.start(producer)
    with pytest.raises(RuntimeError):
        stream.start(producer)
    assert await stream.result() is DONE


async def test_aclose_cancels_a_running_producer() -> None:
    stream = TurnStream()
    started = asyncio.Event()

    async def producer(out: TurnStream) -> Turn:
        started.set()
        await asyncio.sleep(60)
        return DONE

    stream.start(producer)
    await started.wait()
    await stream.aclose()

    with pytest.raises(asyncio.CancelledError):
        await stream.result()


async def test_aclose_with_full_queue_still_ends_the_event_stream() -> None:
    stream = TurnStream(queue_size=2)
    filled = asyncio.Event()

    async def producer(out: TurnStream) -> Turn:
        await out.emit("start")
        await out.emit("token", "a")
        filled.set()
        await out.emit("token", "b")
        return DONE

    async def collect() -> list[str]:
        return [event.type async for event in stream.events()]

    stream.start(producer)
    await filled.wait()
    await asyncio.wait_for(stream.aclose(), timeout=2)

    events = await asyncio.wait_for(collect(), timeout=2)

    assert events == ["token", "end"]
    with pytest.raises(asyncio.CancelledError):
        await stream.result()


def test_queue_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TurnStream(queue_size=0)

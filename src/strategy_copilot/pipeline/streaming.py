"""Two-channel turn stream: a bounded token queue plus a single-resolution result future."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

from strategy_copilot.domain.models import Turn
from strategy_copilot.protocol.sentinel import TokenEvent, TokenEventType

DEFAULT_QUEUE_SIZE = 64


class TurnStream:
    """Consumers drain ``events()`` until ``end``, then await ``result()``.

    ``result()`` drains any unread events itself, so awaiting it directly cannot stall the
    producer on a full queue.
    """

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        self._queue: asyncio.Queue[TokenEvent] = asyncio.Queue(maxsize=queue_size)
        self._future: asyncio.Future[Turn] = asyncio.get_running_loop().create_future()
        self._seq = 0
        self._ended = False
        self._end_queued = False
        self._drained = False
        self._task: asyncio.Task[None] | None = None

    async def emit(self, event_type: TokenEventType, text: str = "") -> None:
        if self._ended:
            raise RuntimeError("turn stream already ended")
        event = TokenEvent(type=event_type, seq=self._seq, text=text)
        self._seq += 1
        if event_type == "end":
            self._ended = True
        await self._queue.put(event)
        if event_type == "end":
            self._end_queued = True

    def start(self, producer: Callable[[TurnStream], Awaitable[Turn]]) -> None:
        """Run ``producer`` in a task; its return value resolves the result future."""

        if self._task is not None:
            raise RuntimeError("turn stream already started")
        self._task = asyncio.get_running_loop().create_task(self._run(producer))

    async def _run(self, producer: Callable[[TurnStream], Awaitable[Turn]]) -> None:
        try:
            turn = await producer(self)
        except asyncio.CancelledError:
            if not self._future.done():
                self._future.cancel()
            self._force_end()
            raise
        except Exception as exc:  # noqa: BLE001
            if not self._future.done():
                self._future.set_exception(exc)
        else:
            if not self._future.done():
                self._future.set_result(turn)
        if not self._ended:
            try:
                await self.emit("end")
            except asyncio.CancelledError:
                self._force_end()
                raise

    def _force_end(self) -> None:
        if self._end_queued:
            return
        if self._queue.full():
            # Oldest unread token gives way to the terminal event.
            self._queue.get_nowait()
        self._ended = True
        self._end_queued = True
        self._queue.put_nowait(TokenEvent(type="end", seq=self._seq))
        self._seq += 1

    async def events(self) -> AsyncIterator[TokenEvent]:
        while not self._drained:
            event = await self._queue.get()
            if event.type == "end":
                self._drained = True
            yield event

    async def result(self) -> Turn:
        if not self._drained:
            async for _ in self.events():
                pass
        return await self._future

    async def aclose(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


__all__ = ["DEFAULT_QUEUE_SIZE", "TurnStream"]

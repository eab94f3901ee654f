"""Fan-out of one async byte stream into independently consumed branches.

A single pump task reads the source and puts every chunk on a bounded queue per
branch, so the fastest reader can run at most ``max_buffered_chunks`` ahead of
the slowest one. A branch that is closed (or whose reader is cancelled) is
detached: its queue is drained and the pump stops feeding it, so abandoning one
branch never stalls the others. Source errors are delivered to every attached
branch. The source is closed exactly once, when the pump finishes or the
multiplexer is closed.
"""
import asyncio
import logging
from typing import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)

_EOF = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException):
        self.exc = exc


class TeeBranch:
    """One readable copy of the source stream."""

    def __init__(self, owner: "StreamMultiplexer", index: int, max_buffered_chunks: int):
        self.index = index
        self._owner = owner
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_buffered_chunks)
        self._detached = False
        self._finished = False

    @property
    def detached(self) -> bool:
        return self._detached

    def __aiter__(self) -> "TeeBranch":
        return self

    async def __anext__(self) -> bytes:
        if self._detached or self._finished:
            raise StopAsyncIteration
        self._owner._ensure_started()
        try:
            item = await self._queue.get()
        except asyncio.CancelledError:
            self._detach()
            raise
        if item is _EOF:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.exc
        return item

    async def aclose(self) -> None:
        if self._detached:
            return
        self._detach()
        if self._owner.all_detached:
            await self._owner.aclose()

    def _detach(self) -> None:
        if self._detached:
            return
        self._detached = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._owner._on_detach()


class StreamMultiplexer:
    """Tee a byte stream into two or three branches with shared backpressure.

    Usage:
        async with StreamMultiplexer(source, branches=3) as (a, b, c):
            await asyncio.gather(consume(a), consume(b), consume(c))
    """

    def __init__(
        self,
        source: AsyncIterable[bytes],
        branches: int = 2,
        max_buffered_chunks: int = 8,
    ):
        if branches not in (2, 3):
            raise ValueError(f"StreamMultiplexer supports 2 or 3 branches, got {branches}")
        if max_buffered_chunks < 1:
            raise ValueError("max_buffered_chunks must be at least 1")
        self._source: AsyncIterator[bytes] = source.__aiter__()
        self._branches = tuple(TeeBranch(self, i, max_buffered_chunks) for i in range(branches))
        self._pump_task: asyncio.Task | None = None
        self._source_closed = False
        self._closed = False

    @property
    def branches(self) -> tuple[TeeBranch, ...]:
        return self._branches

    @property
    def all_detached(self) -> bool:
        return all(b.detached for b in self._branches)

    async def __aenter__(self) -> tuple[TeeBranch, ...]:
        return self._branches

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _ensure_started(self) -> None:
        if self._pump_task is None and not self._closed:
            self._pump_task = asyncio.create_task(self._pump())

    def _on_detach(self) -> None:
        # Last reader gone: stop pulling from the source.
        if self.all_detached and self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                if self.all_detached:
                    return
                for branch in self._branches:
                    if not branch.detached:
                        await branch._queue.put(chunk)
            await self._broadcast(_EOF)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Source stream failed, propagating to branches: %r", exc)
            await self._broadcast(_Failure(exc))
        finally:
            await self._close_source()

    async def _broadcast(self, item) -> None:
        for branch in self._branches:
            if not branch.detached:
                await branch._queue.put(item)

    async def _close_source(self) -> None:
        if self._source_closed:
            return
        self._source_closed = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    async def aclose(self) -> None:
        """Detach every branch, stop the pump and close the source."""
        if self._closed:
            return
        self._closed = True
        for branch in self._branches:
            branch._detach()
        task = self._pump_task
        if task is not None:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._close_source()


async def aiter_bytes(data: bytes, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    """Present an in-memory payload as a chunked async stream."""
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start:start + chunk_size])

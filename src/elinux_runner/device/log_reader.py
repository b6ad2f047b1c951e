"""Log reader - merges a process's stdout and stderr into one line stream."""

from __future__ import annotations

import asyncio
import codecs
from collections import deque
from collections.abc import AsyncIterator, Coroutine
from typing import Any

import structlog

from elinux_runner.device.process import ProcessHandle

logger = structlog.get_logger()

_CHUNK_SIZE = 4096


class LogSubscription:
    """One subscriber's view of the log stream, iterated as decoded lines.

    Malformed UTF-8 is replaced rather than raised. Lines split on ``\\n``
    with a trailing ``\\r`` dropped; an unterminated last line is emitted
    when the stream closes.
    """

    def __init__(self, reader: LogReader) -> None:
        self._reader = reader
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._lines: deque[str] = deque()
        self._done = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Detach from the reader. Never blocks."""
        if self._closed:
            return
        self._closed = True
        self._reader._unsubscribe(self)
        self._queue.put_nowait(None)

    def _feed(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def _finish(self) -> None:
        self._queue.put_nowait(None)

    def _split(self, text: str) -> None:
        *complete, self._buffer = (self._buffer + text).split("\n")
        self._lines.extend(line.removesuffix("\r") for line in complete)

    def __aiter__(self) -> LogSubscription:
        return self

    async def __anext__(self) -> str:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._lines:
                return self._lines.popleft()
            if self._done:
                raise StopAsyncIteration
            chunk = await self._queue.get()
            if chunk is None:
                self._done = True
                tail = self._buffer + self._decoder.decode(b"", final=True)
                self._buffer = ""
                if tail:
                    self._lines.append(tail.removesuffix("\r"))
                continue
            self._split(self._decoder.decode(chunk))


class LogReader:
    """Broadcasts the output of the attached process to every subscriber.

    The stream closes when the attached process exits, after both pipes are
    drained or ``drain_timeout`` passes.
    """

    def __init__(self, name: str = "eLinux", *, drain_timeout: float = 1.0) -> None:
        self.name = name
        self._drain_timeout = drain_timeout
        self._subscribers: set[LogSubscription] = set()
        self._process: ProcessHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def process(self) -> ProcessHandle | None:
        return self._process

    def attach(self, handle: ProcessHandle) -> None:
        """Start streaming ``handle``'s output. Attaching the same handle twice is a no-op."""
        if self._process is handle:
            return
        self._process = handle
        self._closed = False
        streams = [s for s in (handle.process.stdout, handle.process.stderr) if s is not None]
        pumps = [self._spawn(self._pump(stream)) for stream in streams]
        self._spawn(self._close_on_exit(handle, pumps))
        logger.debug("log_reader_attached", reader=self.name, pid=handle.pid)

    def subscribe(self) -> LogSubscription:
        subscription = LogSubscription(self)
        if self._closed:
            subscription._finish()
        else:
            self._subscribers.add(subscription)
        return subscription

    async def lines(self) -> AsyncIterator[str]:
        """Yield lines from now until the attached process exits."""
        subscription = self.subscribe()
        try:
            async for line in subscription:
                yield line
        finally:
            subscription.close()

    def dispose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._close()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await stream.read(_CHUNK_SIZE)
                if not chunk:
                    break
                for subscription in list(self._subscribers):
                    subscription._feed(chunk)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("log_pump_error", reader=self.name)

    async def _close_on_exit(
        self, handle: ProcessHandle, pumps: list[asyncio.Task[None]]
    ) -> None:
        await handle.wait()
        if pumps:
            _, pending = await asyncio.wait(pumps, timeout=self._drain_timeout)
            for task in pending:
                task.cancel()
        if self._process is handle:
            self._close()

    def _close(self) -> None:
        self._closed = True
        for subscription in list(self._subscribers):
            subscription._finish()
        self._subscribers.clear()

    def _unsubscribe(self, subscription: LogSubscription) -> None:
        self._subscribers.discard(subscription)

from __future__ import annotations
import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, Protocol, Union

from agent.errors import SessionError
from common.log import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """The parts of a websockets ClientConnection the agent relies on."""

    async def send(self, message: Union[str, bytes]) -> None: ...

    async def ping(self, data: Optional[bytes] = None) -> Awaitable[Any]: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __aiter__(self) -> Any: ...


class WriterClosedError(SessionError):
    """Raised when a write is submitted after the session's writer stopped."""
    pass


@dataclass
class _Write:
    kind: str                       # "text" or "ping"
    data: Union[str, bytes]
    done: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class OutboundWriter:
    """
    Single owner of every write on one transport.

    Outbound responses and keepalive pings are queued and written one at a
    time by the writer task, so frames from different producers never overlap.
    """

    def __init__(self, transport: Transport, *, write_timeout: float = 10.0) -> None:
        self.transport = transport
        self.write_timeout = write_timeout
        self._queue: "asyncio.Queue[_Write]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="outbound-writer")

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_text(self, data: str) -> None:
        """Queue a text frame and wait until it was written."""
        await self._submit(_Write("text", data))

    async def ping(self, data: bytes = b"ping") -> Awaitable[Any]:
        """Queue a ping frame; returns the waiter that resolves on the matching pong."""
        return await self._submit(_Write("ping", data))

    async def _submit(self, write: _Write) -> Any:
        if self._closed:
            raise WriterClosedError("Outbound writer is closed")
        await self._queue.put(write)
        return await write.done

    async def _run(self) -> None:
        while True:
            write = await self._queue.get()
            if write.done.cancelled():
                continue
            try:
                if write.kind == "ping":
                    result = await asyncio.wait_for(self.transport.ping(write.data), self.write_timeout)
                else:
                    result = await asyncio.wait_for(self.transport.send(write.data), self.write_timeout)
            except asyncio.CancelledError:
                if not write.done.done():
                    write.done.set_exception(WriterClosedError("Outbound writer stopped mid-write"))
                raise
            except Exception as e:
                logger.debug("Transport %s write failed: %s", write.kind, e)
                if not write.done.done():
                    write.done.set_exception(e)
            else:
                if not write.done.done():
                    write.done.set_result(result)

    async def stop(self) -> None:
        """Stop the writer task and fail anything still queued."""
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        while not self._queue.empty():
            write = self._queue.get_nowait()
            if not write.done.done():
                write.done.set_exception(WriterClosedError("Outbound writer is closed"))

import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("COSIGN_LOG_DIR", tempfile.mkdtemp(prefix="cosign-logs-"))

from agent.config import ClientConfig
from agent.handlers import Dispatcher, HandlerContext
from agent.signer import PlaceholderSigner

_END = object()


class FakeTransport:
    """In-memory stand-in for a websockets ClientConnection."""

    def __init__(self, *, pong: bool = True, write_delay: float = 0.0) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.pings: list = []
        self.events: list = []
        self.pong = pong
        self.write_delay = write_delay
        self.close_calls = 0

    def feed(self, frame) -> None:
        self.incoming.put_nowait(frame)

    def fail(self, exc: BaseException) -> None:
        self.incoming.put_nowait(exc)

    def finish(self) -> None:
        self.incoming.put_nowait(_END)

    async def _write(self, kind: str, data) -> None:
        if self.close_calls:
            raise ConnectionError("transport closed")
        self.events.append(("start", kind))
        await asyncio.sleep(self.write_delay)
        self.events.append(("end", kind))

    async def send(self, data) -> None:
        await self._write("text", data)
        self.sent.append(data)

    async def ping(self, data=None):
        await self._write("ping", data)
        self.pings.append(data)
        waiter = asyncio.get_running_loop().create_future()
        if self.pong:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        self.finish()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingDialer:
    """Dialer that hands out FakeTransports and records every dial."""

    def __init__(self, **transport_kwargs) -> None:
        self.transport_kwargs = transport_kwargs
        self.urls: list = []
        self.ssl_contexts: list = []
        self.times: list = []
        self.transports: list = []

    async def __call__(self, url, ssl_context, open_timeout):
        self.urls.append(url)
        self.ssl_contexts.append(ssl_context)
        self.times.append(asyncio.get_running_loop().time())
        transport = FakeTransport(**self.transport_kwargs)
        self.transports.append(transport)
        return transport


@pytest.fixture
def make_config():
    def _make(**overrides) -> ClientConfig:
        values = dict(
            url="ws://coordinator.test/production",
            client_id="cli123",
            keepalive_interval=60.0,
            probe_timeout=0.5,
            reconnect_delay=0.05,
        )
        values.update(overrides)
        return ClientConfig(**values).validate()
    return _make


@pytest.fixture
def announcements():
    return []


@pytest.fixture
def make_dispatcher(make_config, announcements):
    def _make(config=None, signer=None, **config_overrides) -> Dispatcher:
        config = config or make_config(**config_overrides)
        ctx = HandlerContext(
            config=config,
            signer=signer or PlaceholderSigner(),
            announce=lambda text, payload: announcements.append((text, payload)),
        )
        return Dispatcher(ctx)
    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        end = loop.time() + timeout
        while loop.time() < end:
            if predicate():
                return True
            await asyncio.sleep(0.005)
        return predicate()
    return _wait


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def dialer_factory():
    return RecordingDialer

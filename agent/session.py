from __future__ import annotations
import asyncio
import ssl
from contextlib import suppress
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets

from agent.config import ClientConfig, ConfigError
from agent.errors import ConnectionClosedError, DialError, ReadError
from agent.handlers import Dispatcher
from agent.keepalive import KeepaliveMonitor
from agent.writer import OutboundWriter, Transport, WriterClosedError
from common.envelope import Envelope
from common.log import get_logger

logger = get_logger(__name__)

Dialer = Callable[[str, Optional[ssl.SSLContext], float], Awaitable[Transport]]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def resolve_endpoint(url: str, client_type: str, client_id: str) -> str:
    """
    Attach the client identification query parameters to the endpoint.

    ``type`` and ``cliId`` are always set to this client's values; any other
    query parameters already on the URL are kept.
    """
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise ConfigError(f"invalid websocket URL: {e}")
    if parts.scheme not in ("ws", "wss"):
        raise ConfigError(f"invalid websocket URL {url!r}: scheme must be ws or wss")
    if not parts.hostname:
        raise ConfigError(f"invalid websocket URL {url!r}: missing host")

    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if k not in ("type", "cliId")]
    query += [("type", client_type), ("cliId", client_id)]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_ssl_context(url: str, allow_insecure_tls: bool = False) -> Optional[ssl.SSLContext]:
    """Verified TLS for wss:// unless the development opt-out is set; None for ws://"""
    if not url.startswith("wss://"):
        return None
    context = ssl.create_default_context()
    if allow_insecure_tls:
        logger.warning("Dialing %s WITHOUT certificate verification (allow_insecure_tls)", url)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def websocket_dialer(url: str, ssl_context: Optional[ssl.SSLContext], open_timeout: float) -> Transport:
    # keepalive pings are driven by KeepaliveMonitor, not by the library
    kwargs = {"open_timeout": open_timeout, "ping_interval": None}
    if ssl_context is not None:
        kwargs["ssl"] = ssl_context
    return await websockets.connect(url, **kwargs)


class ConnectionSession:
    """
    One physical connection to the coordinator.

    Owns the transport, the outbound writer, the keepalive monitor and the read
    loop for the lifetime of a single connection. ``connect_and_listen`` only
    ever ends by raising: the exception is the reason the connection ended.
    """

    def __init__(
        self,
        config: ClientConfig,
        dispatcher: Dispatcher,
        *,
        dialer: Dialer = websocket_dialer,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self.dialer = dialer
        self.state = ConnectionState.IDLE
        self.transport: Optional[Transport] = None
        self.writer: Optional[OutboundWriter] = None
        self.keepalive: Optional[KeepaliveMonitor] = None
        self.frames_received = 0
        self._tasks: List[asyncio.Task] = []
        self._aborted = asyncio.Event()
        self._closed = False

    @property
    def _log_ctx(self) -> dict:
        return {"client_id": self.config.client_id}

    async def connect_and_listen(self) -> None:
        self.state = ConnectionState.CONNECTING
        try:
            url = resolve_endpoint(self.config.url, self.config.client_type, self.config.client_id)
            ssl_context = build_ssl_context(url, self.config.allow_insecure_tls)

            try:
                self.transport = await self.dialer(url, ssl_context, self.config.dial_timeout)
            except Exception as e:
                raise DialError(f"WebSocket connect error: {e}") from e

            self.state = ConnectionState.OPEN
            logger.info("Connected to WebSocket server", extra=self._log_ctx)

            self.writer = OutboundWriter(self.transport, write_timeout=self.config.write_timeout)
            self.writer.start()
            self.keepalive = KeepaliveMonitor(
                self.writer,
                interval=self.config.keepalive_interval,
                probe_timeout=self.config.probe_timeout,
            )
            keepalive_task = asyncio.create_task(self.keepalive.run(), name="keepalive")
            read_task = asyncio.create_task(self._read_loop(), name="read-loop")
            abort_task = asyncio.create_task(self._aborted.wait(), name="abort-wait")
            self._tasks = [read_task, keepalive_task, abort_task]

            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            if abort_task in done:
                raise ConnectionClosedError("session aborted")
            finished = keepalive_task if keepalive_task in done else read_task
            exc = finished.exception()
            if exc is None:
                raise ConnectionClosedError(f"{finished.get_name()} ended unexpectedly")
            raise exc
        finally:
            await self.close()

    async def _read_loop(self) -> None:
        assert self.transport is not None
        try:
            async for raw in self.transport:
                await self._on_frame(raw)
        except Exception as e:
            raise ReadError(f"read error: {e}") from e
        raise ConnectionClosedError("connection closed by peer")

    async def _on_frame(self, raw: Union[str, bytes]) -> None:
        self.frames_received += 1
        try:
            outbound = self.dispatcher.handle_frame(raw)
        except Exception as e:
            logger.error("Failed to process inbound frame: %s", e, extra=self._log_ctx)
            return
        if outbound is None:
            return
        try:
            await self.send(outbound)
        except Exception as e:
            logger.error("Failed to send %s: %s", outbound.operation_type, e, extra=self._log_ctx)

    async def send(self, envelope: Envelope) -> None:
        """Serialize an envelope and hand it to the session's single writer."""
        if self.writer is None:
            raise WriterClosedError("Session is not connected")
        await self.writer.send_text(envelope.to_json())
        logger.debug("Sent %s", envelope.operation_type, extra=self._log_ctx)

    def abort(self) -> None:
        """Ask a running session to tear down; connect_and_listen raises ConnectionClosedError."""
        self._aborted.set()

    async def close(self) -> None:
        """Stop keepalive and writer, close the transport. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.state = ConnectionState.CLOSING

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks = []

        if self.writer is not None:
            await self.writer.stop()
        if self.transport is not None:
            try:
                await self.transport.close()
            except Exception as e:
                logger.debug("Error closing transport: %s", e)
            logger.info("Connection closed", extra=self._log_ctx)

        self.state = ConnectionState.CLOSED

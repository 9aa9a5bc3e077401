import asyncio
import json
import ssl
from urllib.parse import parse_qs, urlsplit

import pytest

from agent.config import ConfigError
from agent.errors import ConnectionClosedError, DialError, KeepaliveError, ReadError
from agent.session import ConnectionSession, ConnectionState, build_ssl_context, resolve_endpoint

SIGNING_FRAME = json.dumps({
    "operationType": "PartialSig",
    "message": {"accountHash": "acc", "teamId": "team", "transactionId": "tx", "partialSig": "ps"},
})


def test_resolve_endpoint_sets_client_identity():
    url = resolve_endpoint("wss://api.example.com/production?stage=1&cliId=old", "cli", "cli123")

    parts = urlsplit(url)
    assert parts.scheme == "wss"
    assert parts.netloc == "api.example.com"
    assert parts.path == "/production"
    assert parse_qs(parts.query) == {"stage": ["1"], "type": ["cli"], "cliId": ["cli123"]}


@pytest.mark.parametrize("url", ["https://api.example.com", "wss://", "coordinator:8443", ""])
def test_resolve_endpoint_rejects_invalid_urls(url):
    with pytest.raises(ConfigError):
        resolve_endpoint(url, "cli", "cli123")


def test_tls_verified_by_default():
    assert build_ssl_context("ws://localhost:8765") is None

    context = build_ssl_context("wss://api.example.com")
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True

    insecure = build_ssl_context("wss://api.example.com", allow_insecure_tls=True)
    assert insecure.verify_mode == ssl.CERT_NONE
    assert insecure.check_hostname is False


@pytest.mark.asyncio
async def test_session_answers_signing_request(make_config, make_dispatcher, dialer_factory, wait_until):
    config = make_config()
    dialer = dialer_factory()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    task = asyncio.create_task(session.connect_and_listen())
    assert await wait_until(lambda: session.state is ConnectionState.OPEN)
    transport = dialer.transports[0]
    assert parse_qs(urlsplit(dialer.urls[0]).query) == {"type": ["cli"], "cliId": ["cli123"]}

    transport.feed(SIGNING_FRAME)
    assert await wait_until(lambda: len(transport.sent) == 1)

    sent = json.loads(transport.sent[0])
    assert sent["operationType"] == "FullSig"
    assert sent["action"] == "sendServer"
    assert sent["sourceId"] == "cli123"
    assert sent["message"]["transactionId"] == "tx"

    session.abort()
    with pytest.raises(ConnectionClosedError):
        await task
    assert session.state is ConnectionState.CLOSED
    assert transport.close_calls == 1


@pytest.mark.asyncio
async def test_malformed_frames_keep_session_open(make_config, make_dispatcher, dialer_factory, wait_until):
    config = make_config()
    dialer = dialer_factory()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    task = asyncio.create_task(session.connect_and_listen())
    assert await wait_until(lambda: dialer.transports)
    transport = dialer.transports[0]

    for raw in (b"\xff", "{", '{"operationType":"unknown"}', '{"operationType":"pairing","message":7}'):
        transport.feed(raw)
    transport.feed(SIGNING_FRAME)

    assert await wait_until(lambda: len(transport.sent) == 1)
    assert session.frames_received == 5
    assert session.state is ConnectionState.OPEN
    assert not task.done()

    session.abort()
    with pytest.raises(ConnectionClosedError):
        await task


@pytest.mark.asyncio
async def test_peer_close_ends_session(make_config, make_dispatcher, dialer_factory, wait_until):
    config = make_config()
    dialer = dialer_factory()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    task = asyncio.create_task(session.connect_and_listen())
    assert await wait_until(lambda: dialer.transports)
    dialer.transports[0].finish()

    with pytest.raises(ConnectionClosedError):
        await task
    assert dialer.transports[0].close_calls == 1


@pytest.mark.asyncio
async def test_read_failure_raises_read_error(make_config, make_dispatcher, dialer_factory, wait_until):
    config = make_config()
    dialer = dialer_factory()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    task = asyncio.create_task(session.connect_and_listen())
    assert await wait_until(lambda: dialer.transports)
    dialer.transports[0].fail(ConnectionResetError("reset by peer"))

    with pytest.raises(ReadError):
        await task
    assert session.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_dial_failure_raises_dial_error(make_config, make_dispatcher):
    async def refusing_dialer(url, ssl_context, open_timeout):
        raise OSError("connection refused")

    config = make_config()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=refusing_dialer)

    with pytest.raises(DialError):
        await session.connect_and_listen()
    assert session.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_invalid_endpoint_is_a_config_error(make_config, make_dispatcher, dialer_factory):
    config = make_config(url="http://coordinator.test")
    dialer = dialer_factory()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    with pytest.raises(ConfigError):
        await session.connect_and_listen()
    assert dialer.urls == []


@pytest.mark.asyncio
async def test_keepalive_stops_after_teardown(make_config, make_dispatcher, dialer_factory, wait_until):
    config = make_config(keepalive_interval=0.02)
    dialer = dialer_factory()
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    task = asyncio.create_task(session.connect_and_listen())
    assert await wait_until(lambda: dialer.transports and len(dialer.transports[0].pings) >= 2)
    transport = dialer.transports[0]
    assert transport.pings[0] == b"ping"

    transport.finish()
    with pytest.raises(ConnectionClosedError):
        await task

    probes = len(transport.pings)
    await asyncio.sleep(0.1)
    assert len(transport.pings) == probes
    assert session.keepalive.probes_sent >= 2

    await session.close()
    assert transport.close_calls == 1


@pytest.mark.asyncio
async def test_unanswered_ping_kills_session(make_config, make_dispatcher, dialer_factory):
    config = make_config(keepalive_interval=0.02, probe_timeout=0.05)
    dialer = dialer_factory(pong=False)
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    with pytest.raises(KeepaliveError):
        await asyncio.wait_for(session.connect_and_listen(), 2.0)
    assert dialer.transports[0].close_calls == 1


@pytest.mark.asyncio
async def test_responses_and_pings_never_interleave(make_config, make_dispatcher, dialer_factory, wait_until):
    config = make_config(keepalive_interval=0.005)
    dialer = dialer_factory(write_delay=0.01)
    session = ConnectionSession(config, make_dispatcher(config=config), dialer=dialer)

    task = asyncio.create_task(session.connect_and_listen())
    assert await wait_until(lambda: dialer.transports)
    transport = dialer.transports[0]
    for _ in range(5):
        transport.feed(SIGNING_FRAME)

    assert await wait_until(lambda: len(transport.sent) == 5 and len(transport.pings) >= 3)
    session.abort()
    with pytest.raises(ConnectionClosedError):
        await task

    events = list(transport.events)
    # a write cut short by teardown leaves a trailing start
    if events[-1][0] == "start":
        events.pop()
    assert len(events) % 2 == 0
    for started, ended in zip(events[::2], events[1::2]):
        assert started[0] == "start"
        assert ended == ("end", started[1])

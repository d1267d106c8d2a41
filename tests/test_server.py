"""End-to-end tests for netmeter_server.server over a real loopback socket."""

import asyncio
import json

import aiohttp
import pytest

from netmeter.records import ChunkResult, Direction, DirectionSummary
from netmeter.stream import WS_PROTOCOL, AdaptiveStreamEngine
from netmeter_server.channel import WebSocketChannel
from netmeter_server.client import HttpChunkTransport, create_session


async def _wait_for_event(events, predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    until = loop.time() + timeout
    while loop.time() < until:
        for event in events:
            if predicate(event):
                return event
        await asyncio.sleep(0.02)
    raise AssertionError("event never emitted")


# =============================================================================
# Sessions
# =============================================================================

@pytest.mark.asyncio
async def test_port_zero_binds_an_ephemeral_port(server):
    assert server.port > 0
    async with aiohttp.ClientSession() as http:
        async with http.post(f"http://127.0.0.1:{server.port}/session") as resp:
            assert resp.status == 201


@pytest.mark.asyncio
async def test_create_session(server, base):
    async with aiohttp.ClientSession() as http:
        async with http.post(base + "/session") as resp:
            assert resp.status == 201
            assert resp.content_type == "application/json"
            body = json.loads(await resp.read())
    assert server.registry.exists(body["sessionID"])


@pytest.mark.asyncio
async def test_delete_session(server, base):
    async with aiohttp.ClientSession() as http:
        sid = await create_session(http, base)
        async with http.delete(f"{base}/session/{sid}") as resp:
            assert resp.status == 204
        async with http.delete(f"{base}/session/{sid}") as resp:
            assert resp.status == 404
        async with http.get(f"{base}/session/{sid}/chunk/32") as resp:
            assert resp.status == 404
    assert not server.registry.exists(sid)


# =============================================================================
# Chunks
# =============================================================================

@pytest.mark.asyncio
async def test_download_chunk_of_32_bytes(server, base, events):
    async with aiohttp.ClientSession() as http:
        sid = await create_session(http, base)
        async with http.get(f"{base}/session/{sid}/chunk/32") as resp:
            assert resp.status == 200
            assert resp.content_length == 32
            body = await resp.read()
    assert len(body) == 32

    served = await _wait_for_event(events, lambda e: isinstance(e, ChunkResult))
    assert served.window.direction is Direction.DOWNLOAD
    assert served.count == 32
    assert served.ok


@pytest.mark.asyncio
async def test_download_spans_several_buffers(base):
    size = (3 << 20) + 17
    async with aiohttp.ClientSession() as http:
        sid = await create_session(http, base)
        received = []
        status = await HttpChunkTransport(http, base).download(sid, size, received.append)
    assert status == 200
    assert sum(received) == size


@pytest.mark.asyncio
async def test_upload_one_mebibyte(server, base, events):
    async with aiohttp.ClientSession() as http:
        sid = await create_session(http, base)
        sent = []
        status = await HttpChunkTransport(http, base).upload(sid, 1 << 20, sent.append)
    assert status == 204
    assert sum(sent) == 1048576

    received = await _wait_for_event(
        events,
        lambda e: isinstance(e, ChunkResult) and e.window.direction is Direction.UPLOAD,
    )
    assert received.count == 1048576
    assert received.ok


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["GET", "PUT"])
async def test_chunk_for_unknown_session_is_not_found(base, method):
    async with aiohttp.ClientSession() as http:
        async with http.request(method, f"{base}/session/no-such-session/chunk/32") as resp:
            assert resp.status == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "size", ["0", "-5", "abc", "1e3", "12x", str(1 << 63), "99999999999999999999999"],
)
async def test_invalid_chunk_size_is_bad_request(base, size):
    async with aiohttp.ClientSession() as http:
        sid = await create_session(http, base)
        async with http.get(f"{base}/session/{sid}/chunk/{size}") as resp:
            assert resp.status == 400
        async with http.put(f"{base}/session/{sid}/chunk/{size}", data=b"x") as resp:
            assert resp.status == 400


# =============================================================================
# Probes
# =============================================================================

@pytest.mark.asyncio
async def test_probe(base):
    async with aiohttp.ClientSession() as http:
        sid = await create_session(http, base)
        async with http.get(f"{base}/session/{sid}/probe/p-1") as resp:
            assert resp.status == 204
        async with http.get(f"{base}/session/unknown/probe/p-2") as resp:
            assert resp.status == 404


# =============================================================================
# WebSocket variant
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/download", "/upload"])
async def test_websocket_requires_subprotocol(base, path):
    async with aiohttp.ClientSession() as http:
        with pytest.raises(aiohttp.WSServerHandshakeError) as info:
            await http.ws_connect(base + path)
        assert info.value.status == 400

        with pytest.raises(aiohttp.WSServerHandshakeError) as info:
            await http.ws_connect(base + path, protocols=("something.else",))
        assert info.value.status == 400


@pytest.mark.asyncio
async def test_websocket_download(base):
    async with aiohttp.ClientSession() as http:
        async with http.ws_connect(base + "/download", protocols=(WS_PROTOCOL,)) as ws:
            assert ws.protocol == WS_PROTOCOL
            engine = AdaptiveStreamEngine(Direction.DOWNLOAD)
            deadline = asyncio.get_running_loop().time() + 3.0
            summary = await engine.receive(WebSocketChannel(ws), deadline)

    # The server's own 0.5 s budget ends the test by closing the socket.
    assert summary.reason == "closed"
    assert summary.count >= 1024
    assert summary.bits_per_second > 0


@pytest.mark.asyncio
async def test_websocket_upload(base, events):
    async with aiohttp.ClientSession() as http:
        async with http.ws_connect(base + "/upload", protocols=(WS_PROTOCOL,)) as ws:
            channel = WebSocketChannel(ws)
            engine = AdaptiveStreamEngine(Direction.UPLOAD)
            deadline = asyncio.get_running_loop().time() + 0.3
            sent = await engine.send(channel, deadline)
            await channel.close()

    assert sent.count >= 1024
    received = await _wait_for_event(
        events,
        lambda e: isinstance(e, DirectionSummary) and e.direction is Direction.UPLOAD,
    )
    assert 0 < received.count <= sent.count

"""End-to-end tests for the measurement drivers in netmeter_server.client."""

import socket

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web

from netmeter.records import ChunkResult, Direction, DirectionSummary, ProbeSample
from netmeter.transport import ProtocolError, TransferError
from netmeter_server.client import (
    ChunkedMeasurement,
    HttpProbeTransport,
    StreamMeasurement,
    client_ssl_context,
    create_session,
    delete_session,
)
from netmeter_server.server import NetmeterServer


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _split_by_direction(events):
    """Group events by direction, using each DirectionSummary as the boundary."""
    groups = {}
    current = []
    for event in events:
        current.append(event)
        if isinstance(event, DirectionSummary):
            groups[event.direction] = current
            current = []
    return groups


# =============================================================================
# Session helpers
# =============================================================================

@pytest.mark.asyncio
async def test_create_session_against_closed_port():
    base = f"http://127.0.0.1:{_free_port()}"
    async with aiohttp.ClientSession() as http:
        with pytest.raises(TransferError):
            await create_session(http, base)


@pytest.mark.asyncio
async def test_create_session_rejects_wrong_status(base):
    async with aiohttp.ClientSession() as http:
        with pytest.raises(ProtocolError) as info:
            await create_session(http, base + "/elsewhere")
    assert info.value.status == 404


@pytest.mark.asyncio
async def test_delete_session_never_raises():
    base = f"http://127.0.0.1:{_free_port()}"
    async with aiohttp.ClientSession() as http:
        assert await delete_session(http, base, "sid") is None


@pytest.mark.asyncio
async def test_probe_transport_rejects_unknown_session(base):
    async with aiohttp.ClientSession() as http:
        with pytest.raises(ProtocolError) as info:
            await HttpProbeTransport(http, base).probe("unknown", "p-1")
    assert info.value.status == 404


def test_client_ssl_context():
    assert client_ssl_context() is True
    assert client_ssl_context(insecure=True) is False


# =============================================================================
# Discrete-chunk variant
# =============================================================================

@pytest.mark.asyncio
async def test_chunked_measurement(server, base):
    events = []
    measurement = ChunkedMeasurement(
        base, budget=2.0, probe_interval=0.1, max_size=64 << 10, on_event=events.append,
    )
    results = await measurement.run()

    assert set(results) == set(Direction)
    assert all(s.ok for s in results.values())
    assert all(s.reason == "max-size" for s in results.values())

    groups = _split_by_direction(events)
    for direction in Direction:
        sizes = [
            e.window.size for e in groups[direction]
            if isinstance(e, ChunkResult)
        ]
        assert sizes == [32 << i for i in range(len(sizes))]
        assert sizes[-1] == 64 << 10

    probes = [e for e in events if isinstance(e, ProbeSample)]
    assert all(p.ok for p in probes)

    # The session is deleted on the way out.
    assert measurement.session_id is not None
    assert len(server.registry) == 0


class DownloadCapServer(NetmeterServer):
    """Refuses download chunks from 128 bytes up."""

    async def handle_get_chunk(self, request):
        if int(request.match_info["size"]) >= 128:
            raise web.HTTPServiceUnavailable()
        return await super().handle_get_chunk(request)


@pytest_asyncio.fixture
async def capped_server():
    srv = DownloadCapServer(host="127.0.0.1", port=0)
    await srv.start()
    try:
        yield srv
    finally:
        await srv.stop()


@pytest.mark.asyncio
async def test_failed_download_still_runs_upload_and_deletes_session(capped_server):
    events = []
    measurement = ChunkedMeasurement(
        f"http://127.0.0.1:{capped_server.port}",
        budget=2.0, probe_interval=0.1, max_size=1024, on_event=events.append,
    )
    results = await measurement.run()

    download = results[Direction.DOWNLOAD]
    assert download.reason == "error"
    assert "503" in download.error
    assert download.count == 32 + 64

    upload = results[Direction.UPLOAD]
    assert upload.ok
    assert upload.reason == "max-size"

    groups = _split_by_direction(events)
    failed = [e for e in groups[Direction.DOWNLOAD] if isinstance(e, ChunkResult) and not e.ok]
    assert [(e.window.size, e.status) for e in failed] == [(128, 503)]
    uploaded = [e.window.size for e in groups[Direction.UPLOAD] if isinstance(e, ChunkResult)]
    assert uploaded == [32, 64, 128, 256, 512, 1024]

    assert measurement.session_id is not None
    assert len(capped_server.registry) == 0


@pytest.mark.asyncio
async def test_probes_per_direction_follow_the_budget(base):
    events = []
    measurement = ChunkedMeasurement(
        base, budget=1.0, probe_interval=0.25, on_event=events.append,
    )
    results = await measurement.run()

    groups = _split_by_direction(events)
    for direction in Direction:
        probes = [e for e in groups[direction] if isinstance(e, ProbeSample)]
        if results[direction].reason == "deadline":
            assert abs(len(probes) - 4) <= 1
        else:
            assert len(probes) <= 5


@pytest.mark.asyncio
async def test_chunked_measurement_without_probes(base):
    events = []
    await ChunkedMeasurement(
        base, budget=1.0, probes=False, max_size=1024, on_event=events.append,
    ).run()
    assert not any(isinstance(e, ProbeSample) for e in events)


@pytest.mark.asyncio
async def test_chunked_measurement_against_closed_port():
    measurement = ChunkedMeasurement(f"http://127.0.0.1:{_free_port()}", budget=1.0)
    with pytest.raises(TransferError):
        await measurement.run()


def test_chunked_measurement_rejects_bad_arguments():
    with pytest.raises(ValueError):
        ChunkedMeasurement("http://x", budget=0)
    with pytest.raises(ValueError):
        ChunkedMeasurement("http://x", probe_interval=-1)
    with pytest.raises(ValueError):
        ChunkedMeasurement("http://x", initial_size=64, max_size=32)


# =============================================================================
# Continuous-stream variant
# =============================================================================

@pytest.mark.asyncio
async def test_stream_measurement_with_probes(server, base):
    events = []
    results = await StreamMeasurement(
        base, budget=1.0, probe_interval=0.1, on_event=events.append,
    ).run()

    download = results[Direction.DOWNLOAD]
    assert download.ok
    assert download.count > 0
    assert download.bits_per_second > 0
    assert results[Direction.UPLOAD].count > 0

    probes = [e for e in events if isinstance(e, ProbeSample)]
    assert probes
    assert all(p.ok for p in probes)
    assert len(server.registry) == 0


@pytest.mark.asyncio
async def test_stream_measurement_without_probes(server, base):
    events = []
    measurement = StreamMeasurement(base, budget=1.0, probes=False, on_event=events.append)
    results = await measurement.run()

    assert measurement.session_id is None
    assert results[Direction.DOWNLOAD].count > 0
    assert not any(isinstance(e, ProbeSample) for e in events)


@pytest.mark.asyncio
async def test_stream_connect_failure_is_reported_per_direction():
    events = []
    results = await StreamMeasurement(
        f"http://127.0.0.1:{_free_port()}", budget=1.0, probes=False, on_event=events.append,
    ).run()

    for direction in Direction:
        assert results[direction].reason == "error"
        assert results[direction].error.startswith("connect ws://")
    assert [e.direction for e in events if isinstance(e, DirectionSummary)] == list(Direction)

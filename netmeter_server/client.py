"""
netmeter_server/client.py

netmeter measurement CLIENT (initiator side), built on aiohttp.

This is the active side:
  ChunkedMeasurement
    1. POST /session
    2. download: ChunkDoublingEngine + ProbeScheduler under one deadline
    3. upload:   same, other direction
    4. DELETE /session (always, even after a failed direction)

  StreamMeasurement
    1. POST /session (only when probing is enabled; probes need a session)
    2. download: WebSocket /download, AdaptiveStreamEngine.receive()
    3. upload:   WebSocket /upload,   AdaptiveStreamEngine.send()
    4. DELETE /session

The transports here are the only place where aiohttp meets the engine.
Chunk transfers and probes use separate transport objects so the probe
path can be pointed at a different connection later without changing
the engine.
"""

import ssl
import logging
from functools import partial
from typing import AsyncIterator, Optional, Union

import aiohttp

from netmeter.chunked import (
    INITIAL_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    TIME_BUDGET,
    ChunkDoublingEngine,
)
from netmeter.probes import PROBE_INTERVAL, ProbeScheduler
from netmeter.records import Direction, DirectionSummary, EventSink, emit
from netmeter.runner import run_direction
from netmeter.stream import MAX_MESSAGE_SIZE, WS_PROTOCOL, AdaptiveStreamEngine
from netmeter.transport import ByteCallback, ProtocolError, TransferError
from netmeter_server.channel import WebSocketChannel
from netmeter_server.protocol import (
    DOWNLOAD_PATH,
    IO_BUFFER_SIZE,
    SESSION_PATH,
    UPLOAD_PATH,
    ZERO_BUFFER,
    chunk_path,
    decode_session,
    probe_path,
    session_path,
    websocket_url,
)

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0

# aiohttp's `ssl` argument: True = default verification, False = no verification.
SSLOption = Union[ssl.SSLContext, bool]


def client_ssl_context(cafile: Optional[str] = None, insecure: bool = False) -> SSLOption:
    if insecure:
        return False
    if cafile:
        return ssl.create_default_context(cafile=cafile)
    return True


def _client_session() -> aiohttp.ClientSession:
    # No total timeout: the shared measurement deadline bounds every request.
    timeout = aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT)
    return aiohttp.ClientSession(timeout=timeout, auto_decompress=False)


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

async def create_session(
    http: aiohttp.ClientSession,
    base: str,
    ssl_option: SSLOption = True,
) -> str:
    """
    POST /session and return the new session id.

    Raises:
        ProtocolError: status is not 201 or the body carries no sessionID
        TransferError: the request itself failed
    """
    try:
        async with http.post(base + SESSION_PATH, ssl=ssl_option) as resp:
            body = await resp.read()
            if resp.status != 201:
                raise ProtocolError(f"create session: HTTP {resp.status}", resp.status)
    except aiohttp.ClientError as exc:
        raise TransferError(f"create session: {exc}") from exc
    try:
        return decode_session(body)
    except ValueError as exc:
        raise ProtocolError(str(exc), 201) from exc


async def delete_session(
    http: aiohttp.ClientSession,
    base: str,
    sid: str,
    ssl_option: SSLOption = True,
) -> Optional[int]:
    """DELETE /session/{sid}. Failures are logged, never raised."""
    try:
        async with http.delete(base + session_path(sid), ssl=ssl_option) as resp:
            await resp.read()
            status = resp.status
    except aiohttp.ClientError as exc:
        logger.warning("delete session failed", extra={"fields": {"sid": sid, "err": str(exc)}})
        return None
    logger.info("session deleted", extra={"fields": {"sid": sid, "status": status}})
    return status


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

async def _zero_body(size: int, on_bytes: ByteCallback) -> AsyncIterator[memoryview]:
    remaining = size
    while remaining > 0:
        n = min(remaining, IO_BUFFER_SIZE)
        yield ZERO_BUFFER[:n]
        on_bytes(n)
        remaining -= n


class HttpChunkTransport:
    """ChunkTransport over aiohttp: one GET or PUT per chunk."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        base: str,
        ssl_option: SSLOption = True,
    ) -> None:
        self._http = http
        self._base = base
        self._ssl  = ssl_option

    async def download(self, session_id: str, size: int, on_bytes: ByteCallback) -> int:
        url = self._base + chunk_path(session_id, size)
        count = 0
        try:
            async with self._http.get(url, ssl=self._ssl) as resp:
                if resp.status != 200:
                    await resp.read()
                    raise ProtocolError(f"download chunk: HTTP {resp.status}", resp.status)
                async for data in resp.content.iter_chunked(IO_BUFFER_SIZE):
                    count += len(data)
                    on_bytes(len(data))
                status = resp.status
        except aiohttp.ClientError as exc:
            raise TransferError(f"download chunk: {exc}") from exc

        if count != size:
            raise ProtocolError(f"download chunk: expected {size} bytes, got {count}", status)
        return status

    async def upload(self, session_id: str, size: int, on_bytes: ByteCallback) -> int:
        url = self._base + chunk_path(session_id, size)
        headers = {
            "Content-Length": str(size),
            "Content-Type": "application/octet-stream",
        }
        try:
            async with self._http.put(
                url, data=_zero_body(size, on_bytes), headers=headers, ssl=self._ssl,
            ) as resp:
                await resp.read()
                if resp.status != 204:
                    raise ProtocolError(f"upload chunk: HTTP {resp.status}", resp.status)
                return resp.status
        except aiohttp.ClientError as exc:
            raise TransferError(f"upload chunk: {exc}") from exc


class HttpProbeTransport:
    """ProbeTransport over aiohttp: one minimal GET per probe."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        base: str,
        ssl_option: SSLOption = True,
    ) -> None:
        self._http = http
        self._base = base
        self._ssl  = ssl_option

    async def probe(self, session_id: str, probe_id: str) -> int:
        url = self._base + probe_path(session_id, probe_id)
        try:
            async with self._http.get(url, ssl=self._ssl) as resp:
                await resp.read()
                if not 200 <= resp.status < 300:
                    raise ProtocolError(f"probe: HTTP {resp.status}", resp.status)
                return resp.status
        except aiohttp.ClientError as exc:
            raise TransferError(f"probe: {exc}") from exc


# ---------------------------------------------------------------------------
# Measurements
# ---------------------------------------------------------------------------

class ChunkedMeasurement:
    """
    Full discrete-chunk measurement against one server.

    Args:
        base:           server origin, e.g. "http://127.0.0.1:4443"
        ssl_option:     see client_ssl_context()
        budget:         seconds per direction
        probe_interval: seconds between probes
        probes:         run the ProbeScheduler alongside each direction
        initial_size:   first chunk size
        max_size:       largest chunk size
        on_event:       optional sink receiving every emitted record
    """

    def __init__(
        self,
        base: str,
        ssl_option: SSLOption = True,
        budget: float = TIME_BUDGET,
        probe_interval: float = PROBE_INTERVAL,
        probes: bool = True,
        initial_size: int = INITIAL_CHUNK_SIZE,
        max_size: int = MAX_CHUNK_SIZE,
        on_event: Optional[EventSink] = None,
    ) -> None:
        if budget <= 0:
            raise ValueError(f"budget must be positive, got {budget}")
        if probe_interval <= 0:
            raise ValueError(f"probe interval must be positive, got {probe_interval}")
        if max_size < initial_size:
            raise ValueError(
                f"max_size ({max_size}) must be >= initial_size ({initial_size})"
            )
        self.base           = base.rstrip("/")
        self.ssl_option     = ssl_option
        self.budget         = budget
        self.probe_interval = probe_interval
        self.probes         = probes
        self.initial_size   = initial_size
        self.max_size       = max_size
        self._on_event      = on_event
        self.session_id: Optional[str] = None

    async def run(self) -> dict[Direction, DirectionSummary]:
        results: dict[Direction, DirectionSummary] = {}
        async with _client_session() as http:
            sid = await create_session(http, self.base, self.ssl_option)
            self.session_id = sid
            logger.info("session created", extra={"fields": {"sid": sid}})

            chunks = HttpChunkTransport(http, self.base, self.ssl_option)
            probes = HttpProbeTransport(http, self.base, self.ssl_option)
            try:
                for direction in Direction:
                    logger.info("starting %s", direction)
                    results[direction] = await self._run_direction(chunks, probes, sid, direction)
            finally:
                await delete_session(http, self.base, sid, self.ssl_option)

        logger.info("measurement complete", extra={"fields": {"sid": sid}})
        return results

    async def _run_direction(
        self,
        chunks: HttpChunkTransport,
        probes: HttpProbeTransport,
        sid: str,
        direction: Direction,
    ) -> DirectionSummary:
        engine = ChunkDoublingEngine(
            chunks, sid, direction,
            initial_size=self.initial_size,
            max_size=self.max_size,
            on_event=self._on_event,
        )
        scheduler = None
        if self.probes:
            scheduler = ProbeScheduler(
                probes, sid, interval=self.probe_interval, on_sample=self._on_event,
            )
        return await run_direction(engine.run, scheduler, budget=self.budget)


class StreamMeasurement:
    """
    Full continuous-stream measurement against one server.

    Same arguments as ChunkedMeasurement, minus the chunk sizes.
    """

    def __init__(
        self,
        base: str,
        ssl_option: SSLOption = True,
        budget: float = TIME_BUDGET,
        probe_interval: float = PROBE_INTERVAL,
        probes: bool = True,
        on_event: Optional[EventSink] = None,
    ) -> None:
        if budget <= 0:
            raise ValueError(f"budget must be positive, got {budget}")
        if probe_interval <= 0:
            raise ValueError(f"probe interval must be positive, got {probe_interval}")
        self.base           = base.rstrip("/")
        self.ssl_option     = ssl_option
        self.budget         = budget
        self.probe_interval = probe_interval
        self.probes         = probes
        self._on_event      = on_event
        self.session_id: Optional[str] = None

    async def run(self) -> dict[Direction, DirectionSummary]:
        results: dict[Direction, DirectionSummary] = {}
        async with _client_session() as http:
            sid = None
            if self.probes:
                sid = await create_session(http, self.base, self.ssl_option)
                self.session_id = sid
            probe_transport = HttpProbeTransport(http, self.base, self.ssl_option)
            try:
                for direction in Direction:
                    results[direction] = await self._run_direction(
                        http, probe_transport, sid, direction,
                    )
            finally:
                if sid is not None:
                    await delete_session(http, self.base, sid, self.ssl_option)
        return results

    async def _run_direction(
        self,
        http: aiohttp.ClientSession,
        probe_transport: HttpProbeTransport,
        sid: Optional[str],
        direction: Direction,
    ) -> DirectionSummary:
        path = DOWNLOAD_PATH if direction is Direction.DOWNLOAD else UPLOAD_PATH
        url = websocket_url(self.base, path)
        logger.info(str(direction), extra={"fields": {"url": url}})

        engine = AdaptiveStreamEngine(direction, on_event=self._on_event)
        scheduler = None
        if sid is not None:
            scheduler = ProbeScheduler(
                probe_transport, sid, interval=self.probe_interval, on_sample=self._on_event,
            )

        try:
            async with http.ws_connect(
                url,
                protocols=(WS_PROTOCOL,),
                max_msg_size=MAX_MESSAGE_SIZE,
                ssl=self.ssl_option,
            ) as ws:
                channel = WebSocketChannel(ws)
                if direction is Direction.DOWNLOAD:
                    transfer = partial(engine.receive, channel)
                else:
                    transfer = partial(engine.send, channel)
                try:
                    return await run_direction(transfer, scheduler, budget=self.budget)
                finally:
                    await channel.close()
        except aiohttp.ClientError as exc:
            summary = DirectionSummary(
                direction=direction,
                count=0,
                elapsed=0.0,
                bits_per_second=0.0,
                reason="error",
                error=f"connect {url}: {exc}",
            )
            emit(logger, f"{direction} failed", summary, self._on_event, level=logging.WARNING)
            return summary

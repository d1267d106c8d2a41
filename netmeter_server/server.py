"""
netmeter_server/server.py

netmeter measurement SERVER (responder side), built on aiohttp.web.

One application serves both measurement variants:

  Discrete-chunk variant
  ┌──────────────────┬──────────────────────────────────┬────────────────────┐
  │ Operation        │ Route                            │ Success            │
  ├──────────────────┼──────────────────────────────────┼────────────────────┤
  │ create session   │ POST   /session                  │ 201 {"sessionID"}  │
  │ delete session   │ DELETE /session/{sid}            │ 204                │
  │ download chunk   │ GET    /session/{sid}/chunk/{n}  │ 200, n zero bytes  │
  │ upload chunk     │ PUT    /session/{sid}/chunk/{n}  │ 204                │
  │ probe            │ GET    /session/{sid}/probe/{p}  │ 204                │
  └──────────────────┴──────────────────────────────────┴────────────────────┘
  Unknown sid → 404. Malformed or non-positive n → 400.

  Continuous-stream variant
    GET /download  (WebSocket) — server sends, AdaptiveStreamEngine.send()
    GET /upload    (WebSocket) — server receives, AdaptiveStreamEngine.receive()
    The client must offer the WS_PROTOCOL sub-protocol, else 400.

Every handler consults the SessionRegistry before touching the body.
Chunk bodies move in pieces of at most IO_BUFFER_SIZE bytes so neither
side ever materialises a whole 256 MiB chunk.
"""

import asyncio
import signal
import ssl
import time
import logging
from typing import Optional

from aiohttp import ClientPayloadError, web
from aiohttp.http_exceptions import HttpProcessingError

from netmeter.chunked import TIME_BUDGET
from netmeter.records import ChunkResult, Direction, EventSink, TransferWindow, emit
from netmeter.sessions import SessionRegistry
from netmeter.stream import MAX_MESSAGE_SIZE, WS_PROTOCOL, AdaptiveStreamEngine
from netmeter_server.channel import WebSocketChannel
from netmeter_server.protocol import (
    DOWNLOAD_PATH,
    IO_BUFFER_SIZE,
    SESSION_PATH,
    UPLOAD_PATH,
    ZERO_BUFFER,
    encode_session,
    offers_protocol,
    parse_size,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4443


def server_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(cert_file, key_file)
    return ctx


def _parse_size(request: web.Request) -> int:
    try:
        return parse_size(request.match_info["size"])
    except ValueError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc


class NetmeterServer:
    """
    HTTP + WebSocket responder for both measurement variants.

    Usage:
        server = NetmeterServer(host="0.0.0.0", port=4443)
        server.serve_forever()      # blocks until SIGINT / SIGTERM

    Programmatic / test usage:
        server = NetmeterServer(port=0)
        await server.start()        # server.port now holds the bound port
        ...
        await server.stop()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
        ssl_context: Optional[ssl.SSLContext] = None,
        registry: Optional[SessionRegistry] = None,
        budget: float = TIME_BUDGET,
        on_event: Optional[EventSink] = None,
    ) -> None:
        if budget <= 0:
            raise ValueError(f"budget must be positive, got {budget}")
        self.host        = host
        self.port        = port
        self.ssl_context = ssl_context
        self.registry    = registry if registry is not None else SessionRegistry()
        self.budget      = budget
        self._on_event   = on_event
        self._runner: Optional[web.AppRunner] = None

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(SESSION_PATH, self.handle_create_session)
        app.router.add_delete(SESSION_PATH + "/{sid}", self.handle_delete_session)
        app.router.add_get(SESSION_PATH + "/{sid}/chunk/{size}", self.handle_get_chunk)
        app.router.add_put(SESSION_PATH + "/{sid}/chunk/{size}", self.handle_put_chunk)
        app.router.add_get(SESSION_PATH + "/{sid}/probe/{pid}", self.handle_probe)
        app.router.add_get(DOWNLOAD_PATH, self.handle_ws_download)
        app.router.add_get(UPLOAD_PATH, self.handle_ws_upload)
        return app

    def _require_session(self, request: web.Request) -> str:
        sid = request.match_info["sid"]
        if not self.registry.exists(sid):
            raise web.HTTPNotFound(text=f"unknown session: {sid}")
        return sid

    # ------------------------------------------------------------------
    # Discrete-chunk handlers
    # ------------------------------------------------------------------

    async def handle_create_session(self, request: web.Request) -> web.Response:
        sid = self.registry.create()
        logger.info("session created", extra={"fields": {"sid": sid, "remote": request.remote}})
        return web.Response(
            body=encode_session(sid), status=201, content_type="application/json"
        )

    async def handle_delete_session(self, request: web.Request) -> web.Response:
        sid = request.match_info["sid"]
        if not self.registry.delete(sid):
            raise web.HTTPNotFound(text=f"unknown session: {sid}")
        logger.info("session deleted", extra={"fields": {"sid": sid, "remote": request.remote}})
        return web.Response(status=204)

    async def handle_get_chunk(self, request: web.Request) -> web.StreamResponse:
        sid = self._require_session(request)
        size = _parse_size(request)
        logger.info(
            "GET chunk",
            extra={"fields": {"sid": sid, "size": size, "remote": request.remote}},
        )

        resp = web.StreamResponse(status=200)
        resp.content_type = "application/octet-stream"
        resp.content_length = size
        await resp.prepare(request)

        written = 0
        error: Optional[str] = None
        t0 = time.monotonic()
        try:
            while written < size:
                n = min(size - written, IO_BUFFER_SIZE)
                await resp.write(ZERO_BUFFER[:n])
                written += n
            await resp.write_eof()
        except ConnectionError as exc:
            error = str(exc) or type(exc).__name__

        self._emit_chunk(Direction.DOWNLOAD, size, written, time.monotonic() - t0, 200, error)
        return resp

    async def handle_put_chunk(self, request: web.Request) -> web.Response:
        sid = self._require_session(request)
        size = _parse_size(request)
        logger.info(
            "PUT chunk",
            extra={"fields": {"sid": sid, "expect_size": size, "remote": request.remote}},
        )

        read = 0
        error: Optional[str] = None
        t0 = time.monotonic()
        try:
            while read < size:
                data = await request.content.read(min(size - read, IO_BUFFER_SIZE))
                if not data:
                    break
                read += len(data)
        except (ConnectionError, ClientPayloadError, HttpProcessingError) as exc:
            error = str(exc) or type(exc).__name__

        if error is None and read != size:
            error = f"expected {size} bytes, received {read}"
        self._emit_chunk(Direction.UPLOAD, size, read, time.monotonic() - t0, 204, error)
        return web.Response(status=204)

    async def handle_probe(self, request: web.Request) -> web.Response:
        sid = self._require_session(request)
        pid = request.match_info["pid"]
        logger.info(
            "probe",
            extra={"fields": {"sid": sid, "pid": pid, "remote": request.remote}},
        )
        return web.Response(status=204)

    def _emit_chunk(
        self,
        direction: Direction,
        size: int,
        count: int,
        elapsed: float,
        status: int,
        error: Optional[str],
    ) -> None:
        result = ChunkResult(
            window=TransferWindow(direction, size),
            count=count,
            elapsed=elapsed,
            status=status,
            error=error,
        )
        if error is None:
            emit(logger, f"{direction} chunk served", result, self._on_event)
        else:
            emit(logger, f"{direction} chunk aborted", result, self._on_event,
                 level=logging.WARNING)

    # ------------------------------------------------------------------
    # Continuous-stream handlers
    # ------------------------------------------------------------------

    async def _upgrade(self, request: web.Request) -> web.WebSocketResponse:
        if not offers_protocol(request.headers.get("Sec-WebSocket-Protocol")):
            logger.warning(
                "websocket rejected: missing sub-protocol",
                extra={"fields": {"path": request.path, "remote": request.remote}},
            )
            raise web.HTTPBadRequest(text="missing Sec-WebSocket-Protocol header")

        ws = web.WebSocketResponse(protocols=(WS_PROTOCOL,), max_msg_size=MAX_MESSAGE_SIZE)
        await ws.prepare(request)
        return ws

    async def handle_ws_download(self, request: web.Request) -> web.WebSocketResponse:
        ws = await self._upgrade(request)
        logger.info("download", extra={"fields": {"remote": request.remote}})
        channel = WebSocketChannel(ws)
        engine = AdaptiveStreamEngine(Direction.DOWNLOAD, on_event=self._on_event)
        deadline = asyncio.get_running_loop().time() + self.budget
        try:
            await engine.send(channel, deadline)
        finally:
            await channel.close()
        return ws

    async def handle_ws_upload(self, request: web.Request) -> web.WebSocketResponse:
        ws = await self._upgrade(request)
        logger.info("upload", extra={"fields": {"remote": request.remote}})
        channel = WebSocketChannel(ws)
        engine = AdaptiveStreamEngine(Direction.UPLOAD, on_event=self._on_event)
        deadline = asyncio.get_running_loop().time() + self.budget
        try:
            await engine.receive(channel, deadline)
        finally:
            await channel.close()
        return ws

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port, ssl_context=self.ssl_context)
        await site.start()
        if self.port == 0:
            self.port = self._runner.addresses[0][1]
        logger.info("Server started on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Server stopped")

    def serve_forever(self) -> None:
        """Start listening. Blocks until SIGINT / SIGTERM."""
        asyncio.run(self._serve_until_signalled())

    async def _serve_until_signalled(self) -> None:
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, shutdown.set)
            except NotImplementedError:
                pass

        await self.start()
        scheme = "https" if self.ssl_context else "http"
        print(f"\n  netmeter server listening on {scheme}://{self.host}:{self.port}")
        print(f"  Time budget : {self.budget:.1f}s per stream direction")
        print(f"  Press Ctrl-C to stop\n")
        try:
            await shutdown.wait()
        finally:
            print("\n  Shutting down server...")
            await self.stop()

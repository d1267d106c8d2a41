"""
netmeter_server/protocol.py

Wire-level conventions shared by the netmeter client and server.

Routes:
    POST   /session                       create session → {"sessionID": sid}
    DELETE /session/{sid}                 delete session
    GET    /session/{sid}/chunk/{size}    download exactly size bytes
    PUT    /session/{sid}/chunk/{size}    upload exactly size bytes
    GET    /session/{sid}/probe/{pid}     responsiveness probe
    GET    /download, /upload             WebSocket, sub-protocol WS_PROTOCOL

Chunk bodies are zero bytes; content is never examined, only counted.
"""

import json
from typing import Optional

from netmeter.stream import WS_PROTOCOL

SESSION_PATH  = "/session"
DOWNLOAD_PATH = "/download"
UPLOAD_PATH   = "/upload"

# Largest single read/write on a chunk body (1 MiB).
IO_BUFFER_SIZE = 1 << 20

# Largest chunk size a request may name (signed 64-bit range).
MAX_REQUEST_SIZE = (1 << 63) - 1

# Shared read-only source for generated bodies; sliced, never copied.
ZERO_BUFFER = memoryview(bytes(IO_BUFFER_SIZE))


def session_path(sid: str) -> str:
    return f"{SESSION_PATH}/{sid}"


def chunk_path(sid: str, size: int) -> str:
    return f"{SESSION_PATH}/{sid}/chunk/{size}"


def probe_path(sid: str, pid: str) -> str:
    return f"{SESSION_PATH}/{sid}/probe/{pid}"


def parse_size(raw: str) -> int:
    """
    Parse a chunk size path segment.

    Raises:
        ValueError: not a plain decimal integer, not positive, or beyond
                    MAX_REQUEST_SIZE
    """
    if not (raw.isascii() and raw.isdigit()):
        raise ValueError(f"invalid chunk size: {raw!r}")
    size = int(raw)
    if size <= 0:
        raise ValueError(f"chunk size must be positive: {raw!r}")
    if size > MAX_REQUEST_SIZE:
        raise ValueError(f"chunk size out of range: {raw!r}")
    return size


def offers_protocol(header: Optional[str], protocol: str = WS_PROTOCOL) -> bool:
    """True if the Sec-WebSocket-Protocol header lists *protocol*."""
    if not header:
        return False
    return protocol in (p.strip() for p in header.split(","))


def encode_session(sid: str) -> bytes:
    return json.dumps({"sessionID": sid}).encode("utf-8")


def decode_session(payload: bytes) -> str:
    """
    Extract the session id from a create-session response body.

    Raises:
        ValueError: body is not JSON or carries no usable sessionID
    """
    data = json.loads(payload.decode("utf-8"))
    sid = data.get("sessionID") if isinstance(data, dict) else None
    if not isinstance(sid, str) or not sid:
        raise ValueError(f"create session: no sessionID in {data!r}")
    return sid


def base_url(host: str, port: int, tls: bool = False) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    scheme = "https" if tls else "http"
    return f"{scheme}://{host}:{port}"


def websocket_url(base: str, path: str) -> str:
    if base.startswith("https://"):
        return "wss://" + base[len("https://"):] + path
    if base.startswith("http://"):
        return "ws://" + base[len("http://"):] + path
    return base + path

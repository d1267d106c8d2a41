"""
netmeter/transport.py

Pluggable transport interfaces used by the engines, plus the error types
they raise.

The engines never open sockets themselves. The chunk transfer path, the
probe path, and the stream channel are three independent objects, so the
probe traffic can later be moved onto a separate connection or origin
without touching the engine logic.
"""

from typing import Callable, Optional, Protocol

from netmeter.records import StreamMessage

# Called with the number of bytes moved by each read/write.
ByteCallback = Callable[[int], None]


class TransferError(Exception):
    """A chunk, probe or stream operation failed at the transport level."""


class ProtocolError(TransferError):
    """The peer answered, but not the way the protocol requires."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ChannelClosed(TransferError):
    """The peer closed the persistent stream connection."""


class ChunkTransport(Protocol):
    async def download(self, session_id: str, size: int, on_bytes: ByteCallback) -> int:
        """Fetch exactly *size* bytes; return the response status."""
        ...

    async def upload(self, session_id: str, size: int, on_bytes: ByteCallback) -> int:
        """Stream exactly *size* bytes to the peer; return the response status."""
        ...


class ProbeTransport(Protocol):
    async def probe(self, session_id: str, probe_id: str) -> int:
        """Issue one minimal round-trip request; return the response status."""
        ...


class MessageChannel(Protocol):
    async def send_binary(self, data: bytes) -> None:
        ...

    async def receive(self) -> StreamMessage:
        ...

"""
netmeter_server/channel.py

WebSocketChannel — adapts an aiohttp WebSocket (server-side
WebSocketResponse or client-side ClientWebSocketResponse, which share the
send_bytes / receive API) to netmeter's MessageChannel.

aiohttp frame kinds are mapped onto the two StreamMessage variants here,
so the engine only ever sees BinaryMessage or TextMessage.
"""

import logging
from typing import Union

from aiohttp import ClientWebSocketResponse, WSMsgType, web

from netmeter.records import BinaryMessage, StreamMessage, TextMessage
from netmeter.transport import ChannelClosed, TransferError

logger = logging.getLogger(__name__)

_CLOSED_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


class WebSocketChannel:
    def __init__(self, ws: Union[web.WebSocketResponse, ClientWebSocketResponse]) -> None:
        self._ws = ws

    async def send_binary(self, data: bytes) -> None:
        if self._ws.closed:
            raise ChannelClosed("websocket already closed")
        try:
            await self._ws.send_bytes(data)
        except ConnectionResetError as exc:
            raise ChannelClosed(str(exc) or "connection reset") from exc

    async def receive(self) -> StreamMessage:
        msg = await self._ws.receive()
        if msg.type == WSMsgType.BINARY:
            return BinaryMessage(length=len(msg.data))
        if msg.type == WSMsgType.TEXT:
            return TextMessage(text=msg.data)
        if msg.type in _CLOSED_TYPES:
            raise ChannelClosed(f"websocket closed (code={self._ws.close_code})")
        if msg.type == WSMsgType.ERROR:
            raise TransferError(f"websocket error: {self._ws.exception() or msg.data}")
        raise TransferError(f"unexpected websocket frame type {msg.type!r}")

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()

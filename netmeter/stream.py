"""
netmeter/stream.py

AdaptiveStreamEngine — the continuous-stream measurement variant.

One direction is measured over a single persistent duplex connection
carrying framed messages. The same engine is used by both ends:

    ┌──────────┬────────────────────┬────────────────────┐
    │          │ download           │ upload             │
    ├──────────┼────────────────────┼────────────────────┤
    │ client   │ receive()          │ send()             │
    │ server   │ send()             │ receive()          │
    └──────────┴────────────────────┴────────────────────┘

Sender scaling:
    The message size starts at MIN_MESSAGE_SIZE and doubles only while

        size < MAX_SCALED_MESSAGE_SIZE  and  size < total_sent // FRACTION_FOR_SCALING

    so no message outgrows ~1/16 of everything already delivered. Early
    messages stay small while the path capacity is unknown; later the
    size tracks demonstrated throughput.

Receiver:
    Binary frames are counted and discarded. Text frames are out-of-band
    reports from the peer: they are surfaced as StreamReport records and
    do not count toward throughput.

Both sides emit a RateSample at least every MEASURE_INTERVAL, checked
opportunistically after each send / receive.
"""

import asyncio
import logging
from typing import Optional

from netmeter.rate import MEASURE_INTERVAL, RateSampler
from netmeter.records import (
    BinaryMessage,
    Direction,
    DirectionSummary,
    EventSink,
    StreamReport,
    TextMessage,
    emit,
)
from netmeter.transport import ChannelClosed, MessageChannel, TransferError

logger = logging.getLogger(__name__)

MIN_MESSAGE_SIZE = 1 << 10              # 1 KiB
MAX_SCALED_MESSAGE_SIZE = 1 << 20       # 1 MiB
MAX_MESSAGE_SIZE = 1 << 24              # 16 MiB, largest frame a receiver accepts
FRACTION_FOR_SCALING = 16

# Application sub-protocol both ends must declare.
WS_PROTOCOL = "net.measurementlab.ndt.v7"

TIME_BUDGET = 10.0


def next_message_size(
    size: int,
    total_sent: int,
    max_scaled: int = MAX_SCALED_MESSAGE_SIZE,
    fraction: int = FRACTION_FOR_SCALING,
) -> int:
    """Apply the growth gate: double *size* only if both limits allow it."""
    if size >= max_scaled or size >= total_sent // fraction:
        return size
    return size * 2


class AdaptiveStreamEngine:
    """
    Sends or receives one direction over a MessageChannel.

    Args:
        direction:        which test this is (labels records only)
        min_size:         first message size
        max_scaled_size:  size above which the sender stops doubling
        measure_interval: minimum spacing of RateSamples
        on_event:         optional sink for RateSample / StreamReport records
    """

    def __init__(
        self,
        direction: Direction,
        min_size: int = MIN_MESSAGE_SIZE,
        max_scaled_size: int = MAX_SCALED_MESSAGE_SIZE,
        measure_interval: float = MEASURE_INTERVAL,
        on_event: Optional[EventSink] = None,
    ) -> None:
        if min_size <= 0:
            raise ValueError(f"min_size must be positive, got {min_size}")
        if max_scaled_size < min_size:
            raise ValueError(
                f"max_scaled_size ({max_scaled_size}) must be >= min_size ({min_size})"
            )
        self.direction        = direction
        self.min_size         = min_size
        self.max_scaled_size  = max_scaled_size
        self.measure_interval = measure_interval
        self._on_event        = on_event
        self.sizes: list[int] = []      # size of every message sent, in order

    # ------------------------------------------------------------------
    # Sender
    # ------------------------------------------------------------------

    async def send(
        self,
        channel: MessageChannel,
        deadline: float,
        stop: Optional[asyncio.Event] = None,
    ) -> DirectionSummary:
        loop = asyncio.get_running_loop()
        sampler = RateSampler(interval=self.measure_interval)
        size = self.min_size
        message = bytes(size)
        reason = "deadline"
        error: Optional[str] = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if stop is not None and stop.is_set():
                reason = "cancelled"
                break
            try:
                await asyncio.wait_for(channel.send_binary(message), timeout=remaining)
            except asyncio.TimeoutError:
                break
            except ChannelClosed:
                reason = "closed"
                break
            except (TransferError, ConnectionError, OSError) as exc:
                reason = "error"
                error = str(exc) or type(exc).__name__
                break

            self.sizes.append(size)
            sample = sampler.add(size)
            if sample is not None:
                emit(logger, str(self.direction), sample, self._on_event)

            grown = next_message_size(size, sampler.total, self.max_scaled_size)
            if grown != size:
                size = grown
                message = bytes(size)

        return self._finish(sampler, reason, error)

    # ------------------------------------------------------------------
    # Receiver
    # ------------------------------------------------------------------

    async def receive(
        self,
        channel: MessageChannel,
        deadline: float,
        stop: Optional[asyncio.Event] = None,
    ) -> DirectionSummary:
        loop = asyncio.get_running_loop()
        sampler = RateSampler(interval=self.measure_interval)
        reason = "deadline"
        error: Optional[str] = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if stop is not None and stop.is_set():
                reason = "cancelled"
                break
            try:
                message = await asyncio.wait_for(channel.receive(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            except ChannelClosed:
                reason = "closed"
                break
            except (TransferError, ConnectionError, OSError) as exc:
                reason = "error"
                error = str(exc) or type(exc).__name__
                break

            if isinstance(message, TextMessage):
                emit(
                    logger, "peer report",
                    StreamReport(direction=self.direction, text=message.text),
                    self._on_event,
                )
            elif isinstance(message, BinaryMessage):
                sample = sampler.add(message.length)
                if sample is not None:
                    emit(logger, str(self.direction), sample, self._on_event)
            else:
                raise TypeError(f"unexpected stream message: {message!r}")

        return self._finish(sampler, reason, error)

    def _finish(
        self,
        sampler: RateSampler,
        reason: str,
        error: Optional[str],
    ) -> DirectionSummary:
        final = sampler.sample()
        summary = DirectionSummary(
            direction=self.direction,
            count=final.cumulative_bytes,
            elapsed=final.elapsed,
            bits_per_second=final.bits_per_second,
            reason=reason,
            error=error,
        )
        level = logging.WARNING if error else logging.INFO
        emit(logger, f"{self.direction} done", summary, self._on_event, level=level)
        return summary

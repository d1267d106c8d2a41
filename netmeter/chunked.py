"""
netmeter/chunked.py

ChunkDoublingEngine — the discrete-chunk measurement variant.

One direction of one session is measured as a strictly sequential series
of whole-body transfers whose size doubles every iteration:

    32, 64, 128, ... , MAX_CHUNK_SIZE (256 MiB)

Small chunks sample the latency-dominated regime, large ones the
throughput-dominated regime. The loop stops at whichever comes first:

    - the shared deadline (the in-flight chunk is aborted at the deadline)
    - the stop event (caller-initiated abort)
    - the size exceeding MAX_CHUNK_SIZE
    - a transport / protocol error (no retry; the direction just ends)

None of these is fatal to the overall measurement: run() always returns a
DirectionSummary and the caller moves on to the next direction / cleanup.
"""

import asyncio
import time
import logging
from typing import Iterator, Optional

from netmeter.rate import MEASURE_INTERVAL, RateSampler
from netmeter.records import (
    ChunkResult,
    Direction,
    DirectionSummary,
    EventSink,
    TransferWindow,
    emit,
)
from netmeter.transport import ChunkTransport, ProtocolError, TransferError

logger = logging.getLogger(__name__)

INITIAL_CHUNK_SIZE = 32
MAX_CHUNK_SIZE = 256 << 20      # 256 MiB

# Per-direction time budget (seconds).
TIME_BUDGET = 10.0


class ChunkDoublingEngine:
    """
    Drives one direction of a discrete-chunk measurement.

    Args:
        transport:        ChunkTransport performing each whole-body transfer
        session_id:       session every chunk request is addressed to
        direction:        Direction.DOWNLOAD or Direction.UPLOAD
        initial_size:     first chunk size in bytes
        max_size:         largest chunk size attempted
        measure_interval: minimum spacing of progress RateSamples
        on_event:         optional sink for ChunkResult / RateSample records
    """

    def __init__(
        self,
        transport: ChunkTransport,
        session_id: str,
        direction: Direction,
        initial_size: int = INITIAL_CHUNK_SIZE,
        max_size: int = MAX_CHUNK_SIZE,
        measure_interval: float = MEASURE_INTERVAL,
        on_event: Optional[EventSink] = None,
    ) -> None:
        if initial_size <= 0:
            raise ValueError(f"initial_size must be positive, got {initial_size}")
        if max_size < initial_size:
            raise ValueError(
                f"max_size ({max_size}) must be >= initial_size ({initial_size})"
            )

        self.session_id       = session_id
        self.direction        = direction
        self.initial_size     = initial_size
        self.max_size         = max_size
        self.measure_interval = measure_interval
        self._on_event        = on_event
        self.results: list[ChunkResult] = []

        if direction is Direction.DOWNLOAD:
            self._transfer = transport.download
        else:
            self._transfer = transport.upload

    def windows(self) -> Iterator[TransferWindow]:
        size = self.initial_size
        while size <= self.max_size:
            yield TransferWindow(self.direction, size)
            size *= 2

    async def run(
        self,
        deadline: float,
        stop: Optional[asyncio.Event] = None,
    ) -> DirectionSummary:
        """
        Run the doubling loop until *deadline* (event-loop time).

        Returns:
            DirectionSummary covering every byte moved in this direction.
        """
        self.results = []
        loop = asyncio.get_running_loop()
        sampler = RateSampler(interval=self.measure_interval)
        reason = "max-size"
        error: Optional[str] = None

        for window in self.windows():
            if loop.time() >= deadline:
                reason = "deadline"
                break
            if stop is not None and stop.is_set():
                reason = "cancelled"
                break

            result, timed_out = await self._transfer_window(
                window, sampler, deadline - loop.time()
            )
            self.results.append(result)

            if timed_out:
                emit(logger, f"{self.direction} chunk interrupted", result, self._on_event)
                reason = "deadline"
                break
            if not result.ok:
                emit(
                    logger, f"{self.direction} chunk failed", result,
                    self._on_event, level=logging.WARNING,
                )
                reason = "error"
                error = result.error
                break
            emit(logger, f"{self.direction} chunk", result, self._on_event)

        final = sampler.sample()
        summary = DirectionSummary(
            direction=self.direction,
            count=final.cumulative_bytes,
            elapsed=final.elapsed,
            bits_per_second=final.bits_per_second,
            reason=reason,
            error=error,
        )
        emit(logger, f"{self.direction} done", summary, self._on_event)
        return summary

    async def _transfer_window(
        self,
        window: TransferWindow,
        sampler: RateSampler,
        remaining: float,
    ) -> tuple[ChunkResult, bool]:
        count = 0

        def on_bytes(n: int) -> None:
            nonlocal count
            count += n
            sample = sampler.add(n)
            if sample is not None:
                emit(logger, f"{self.direction} progress", sample, self._on_event)

        status: Optional[int] = None
        error: Optional[str] = None
        timed_out = False
        t0 = time.monotonic()
        try:
            status = await asyncio.wait_for(
                self._transfer(self.session_id, window.size, on_bytes),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            timed_out = True
            error = "deadline exceeded"
        except ProtocolError as exc:
            status = exc.status
            error = str(exc)
        except (TransferError, ConnectionError, OSError) as exc:
            error = str(exc) or type(exc).__name__
        elapsed = time.monotonic() - t0

        if error is None and count != window.size:
            error = f"expected {window.size} bytes, moved {count}"

        result = ChunkResult(
            window=window,
            count=count,
            elapsed=elapsed,
            status=status,
            error=error,
        )
        return result, timed_out

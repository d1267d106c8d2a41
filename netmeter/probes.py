"""
netmeter/probes.py

ProbeScheduler — responsiveness probing under load.

While a bulk transfer runs, a small GET is issued against the probe
endpoint every PROBE_INTERVAL seconds and its wall-clock round-trip time
is emitted as a ProbeSample. Rising RTT under load is the bufferbloat
signal.

Tick schedule:
    Ticks are anchored to the scheduler start (start + k * interval).
    A probe that outlasts one interval makes the scheduler skip the ticks
    it missed instead of firing a burst to catch up.

Failure semantics:
    A failed probe (transport error, non-2xx status) is emitted and the
    scheduler carries on. Only the stop event (or task cancellation)
    ends it, and a stop observed between ticks never issues another
    request.
"""

import asyncio
import time
import uuid
import logging
from typing import Callable, Optional

from netmeter.records import EventSink, ProbeSample, emit
from netmeter.sessions import new_time_ordered_id
from netmeter.transport import ProbeTransport, TransferError

logger = logging.getLogger(__name__)

# Spacing between two probe requests (seconds).
PROBE_INTERVAL = 0.25


def new_probe_id() -> str:
    try:
        return new_time_ordered_id()
    except (OSError, ValueError):
        return str(uuid.uuid4())


class ProbeScheduler:
    """
    Issues one probe per tick until told to stop.

    Args:
        transport:  ProbeTransport used for every request
        session_id: session the probes are scoped to
        interval:   seconds between ticks (default PROBE_INTERVAL)
        on_sample:  optional sink receiving every ProbeSample
        id_factory: probe id generator (time-ordered by default)
    """

    def __init__(
        self,
        transport: ProbeTransport,
        session_id: str,
        interval: float = PROBE_INTERVAL,
        on_sample: Optional[EventSink] = None,
        id_factory: Callable[[], str] = new_probe_id,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"probe interval must be positive, got {interval}")
        self._transport  = transport
        self.session_id  = session_id
        self.interval    = interval
        self._on_sample  = on_sample
        self._id_factory = id_factory
        self.issued      = 0

    async def run(self, stop: asyncio.Event) -> int:
        """
        Probe at a fixed cadence until *stop* is set.

        Returns:
            Number of probe requests issued.
        """
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval

        while not stop.is_set():
            delay = next_tick - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            if stop.is_set():
                break

            await self.probe_once()

            next_tick += self.interval
            now = loop.time()
            while next_tick <= now:
                next_tick += self.interval

        logger.debug("ProbeScheduler: stopped after %d probes", self.issued)
        return self.issued

    async def probe_once(self) -> ProbeSample:
        probe_id = self._id_factory()
        self.issued += 1
        t0 = time.perf_counter()
        try:
            status = await self._transport.probe(self.session_id, probe_id)
        except (TransferError, ConnectionError, OSError, asyncio.TimeoutError) as exc:
            sample = ProbeSample(
                probe_id=probe_id,
                rtt=time.perf_counter() - t0,
                status=getattr(exc, "status", None),
                error=str(exc) or type(exc).__name__,
            )
        else:
            sample = ProbeSample(
                probe_id=probe_id,
                rtt=time.perf_counter() - t0,
                status=status,
            )

        if sample.ok:
            emit(logger, "probe", sample, self._on_sample)
        else:
            emit(logger, "probe failed", sample, self._on_sample, level=logging.WARNING)
        return sample

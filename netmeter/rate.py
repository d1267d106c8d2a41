"""
netmeter/rate.py

Throughput arithmetic and the opportunistic periodic sampler.

Rate:
    bits_per_second = (bytes * 8) / elapsed_seconds   when elapsed > 0
                    = 0                               otherwise

Sampling:
    RateSampler is fed on every read/write. It never runs its own timer;
    it only checks the clock at those operation boundaries and yields a
    RateSample when at least `interval` seconds have passed since the
    previous one. The cadence is a lower bound, not a guarantee, and the
    sampling cost stays proportional to I/O activity.
"""

import time
from typing import Callable, Optional

from netmeter.records import RateSample, bits_per_second

# Minimum spacing between two emitted samples (seconds).
MEASURE_INTERVAL = 0.25


class RateSampler:
    """
    Cumulative byte counter for one direction of one measurement.

    Owned by exactly one activity; not thread-safe and not meant to be.

    Usage:
        sampler = RateSampler()
        for data in body:
            sample = sampler.add(len(data))
            if sample is not None:
                emit(...)
        final = sampler.sample()
    """

    def __init__(
        self,
        interval: float = MEASURE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self._clock   = clock
        self.start    = clock()
        self.total    = 0
        self._prev    = self.start

    def add(self, count: int) -> Optional[RateSample]:
        """Account for *count* more bytes; return a sample if one is due."""
        self.total += count
        now = self._clock()
        if now - self._prev >= self.interval:
            self._prev = now
            return self._sample_at(now)
        return None

    def sample(self) -> RateSample:
        """Unconditional sample covering everything since start."""
        return self._sample_at(self._clock())

    @property
    def elapsed(self) -> float:
        return self._clock() - self.start

    def _sample_at(self, now: float) -> RateSample:
        elapsed = now - self.start
        return RateSample(
            cumulative_bytes=self.total,
            elapsed=elapsed,
            bits_per_second=bits_per_second(self.total, elapsed),
        )

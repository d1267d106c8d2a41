"""
netmeter/records.py

Data model shared by both measurement variants.

Records
───────
  Direction        — closed DOWNLOAD / UPLOAD selector, chosen once per call
  Session          — server-assigned token + creation time (never mutated)
  TransferWindow   — one doubling iteration: direction + size
  ProbeSample      — one responsiveness probe: id, RTT, outcome
  RateSample       — cumulative bytes, elapsed, instantaneous bit rate
  ChunkResult      — outcome of one whole-body chunk transfer
  BinaryMessage    — stream payload frame (only the length matters)
  TextMessage      — stream out-of-band report frame
  StreamReport     — a TextMessage surfaced to the caller
  DirectionSummary — what one direction run returns to its caller

Every record is ephemeral: produced, emitted, and dropped. Emission goes
through emit(), which logs the record with its fields attached and then
hands it to the optional caller-supplied sink.
"""

import logging
from dataclasses import dataclass, fields as dc_fields
from enum import Enum
from typing import Callable, Optional, Union


def bits_per_second(count: int, elapsed: float) -> float:
    if elapsed <= 0:
        return 0.0
    return (count * 8) / elapsed


class Direction(Enum):
    DOWNLOAD = "download"
    UPLOAD   = "upload"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Session:
    id: str
    created_at: float


@dataclass(frozen=True)
class TransferWindow:
    direction: Direction
    size: int


@dataclass(frozen=True)
class ProbeSample:
    probe_id: str
    rtt: float                      # seconds, wall clock
    status: Optional[int] = None    # None when the request never completed
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 300


@dataclass(frozen=True)
class RateSample:
    cumulative_bytes: int
    elapsed: float
    bits_per_second: float


@dataclass(frozen=True)
class ChunkResult:
    window: TransferWindow
    count: int                      # bytes actually moved
    elapsed: float
    status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.count == self.window.size

    @property
    def bits_per_second(self) -> float:
        return bits_per_second(self.count, self.elapsed)


@dataclass(frozen=True)
class BinaryMessage:
    length: int


@dataclass(frozen=True)
class TextMessage:
    text: str


StreamMessage = Union[BinaryMessage, TextMessage]


@dataclass(frozen=True)
class StreamReport:
    direction: Direction
    text: str


@dataclass(frozen=True)
class DirectionSummary:
    direction: Direction
    count: int
    elapsed: float
    bits_per_second: float
    reason: str                     # deadline | cancelled | max-size | closed | error
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


EventSink = Callable[[object], None]


def record_fields(record: object) -> dict:
    """Flatten a record into a JSON-friendly dict for structured logging."""
    out = {}
    for f in dc_fields(record):
        value = getattr(record, f.name)
        if isinstance(value, TransferWindow):
            out["direction"] = value.direction.value
            out["size"] = value.size
        elif isinstance(value, Direction):
            out[f.name] = value.value
        elif isinstance(value, float):
            out[f.name] = round(value, 6)
        elif value is not None:
            out[f.name] = value
    if isinstance(record, ChunkResult):
        out["bits_per_second"] = round(record.bits_per_second, 3)
    return out


def emit(
    logger: logging.Logger,
    event: str,
    record: object,
    sink: Optional[EventSink] = None,
    level: int = logging.INFO,
) -> None:
    """Log *record* under *event* and forward it to *sink* (if any)."""
    logger.log(level, event, extra={"fields": record_fields(record)})
    if sink is not None:
        sink(record)

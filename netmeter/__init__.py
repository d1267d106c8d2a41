"""
netmeter — throughput and responsiveness measurement engine.

Public API:
    from netmeter import ChunkDoublingEngine, AdaptiveStreamEngine
    from netmeter import ProbeScheduler, SessionRegistry, run_direction

The engine never opens sockets. Transports are supplied by the caller
(see netmeter.transport); the aiohttp implementations live in
netmeter_server.
"""
from netmeter.chunked import ChunkDoublingEngine
from netmeter.probes import ProbeScheduler
from netmeter.rate import RateSampler, bits_per_second
from netmeter.records import Direction
from netmeter.runner import run_direction
from netmeter.sessions import SessionRegistry
from netmeter.stream import AdaptiveStreamEngine

__version__ = "1.0.0"
__all__ = [
    "AdaptiveStreamEngine",
    "ChunkDoublingEngine",
    "Direction",
    "ProbeScheduler",
    "RateSampler",
    "SessionRegistry",
    "bits_per_second",
    "run_direction",
]

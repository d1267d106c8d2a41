"""
netmeter/runner.py

run_direction — one measured direction with concurrent probing.

    deadline = now + budget
    ┌───────────────────────────┐   ┌───────────────────────────┐
    │ transfer(deadline, stop)  │   │ probes.run(stop)          │
    │  (awaited in this task)   │   │  (child task)             │
    └─────────────┬─────────────┘   └─────────────┬─────────────┘
                  │ returns / raises / cancelled  │
                  └──────► stop.set(), cancel ────┘
                           join child, return

The probe task never outlives run_direction: it is stopped and joined in a
finally block, so the same happens when the transfer fails or when the
caller cancels the whole measurement.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from netmeter.chunked import TIME_BUDGET
from netmeter.probes import ProbeScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")

Transfer = Callable[[float, asyncio.Event], Awaitable[T]]


async def run_direction(
    transfer: Transfer,
    probes: Optional[ProbeScheduler] = None,
    budget: float = TIME_BUDGET,
    stop: Optional[asyncio.Event] = None,
) -> T:
    """
    Run *transfer* and *probes* side by side under one deadline.

    Args:
        transfer: coroutine function called as transfer(deadline, stop)
        probes:   ProbeScheduler to run concurrently (None = no probing)
        budget:   seconds until the shared deadline
        stop:     shared stop event; a fresh one is created if omitted.
                  Setting it from outside aborts both activities.

    Returns:
        Whatever the transfer returns.
    """
    if budget <= 0:
        raise ValueError(f"budget must be positive, got {budget}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + budget
    if stop is None:
        stop = asyncio.Event()

    probe_task: Optional[asyncio.Task] = None
    if probes is not None:
        probe_task = asyncio.create_task(probes.run(stop), name="probe-scheduler")

    try:
        return await transfer(deadline, stop)
    finally:
        stop.set()
        if probe_task is not None:
            probe_task.cancel()
            outcome, = await asyncio.gather(probe_task, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.error("Probe scheduler crashed: %r", outcome)

"""
Background No-Show Sweeper
==========================

Runs every ``NOSHOW_SWEEP_INTERVAL_SECONDS`` (default 30 s) and moves rides
whose arrival deadline has passed without rider confirmation to ``no_show``.

The ``/safety/no-shows/process`` endpoint runs the same sweep on demand for
deployments that prefer an external scheduler.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one API process sweeps at a time.
* Each ride is settled in its own transaction through a conditional
  status write, so a rider confirming at the last moment wins cleanly.
"""

from __future__ import annotations

import asyncio
import logging

from src.api.dependencies import publish_committed
from src.config import settings
from src.infrastructure.database import async_session_factory
from src.infrastructure.locks import DistributedLock
from src.infrastructure.redis_client import get_redis
from src.services.safety import run_no_show_sweep

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweep_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "No-show sweeper started (interval=%ds)",
        settings.noshow_sweep_interval_seconds,
    )


async def stop_sweep_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("No-show sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_sweep_cycle()
        except Exception:
            logger.exception("Unhandled error in no-show sweep")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.noshow_sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_sweep_cycle() -> int:
    """Execute one sweep.  Returns the number of rides marked no-show."""
    redis = await get_redis()
    lock = DistributedLock(
        redis, "noshow-sweep", ttl_seconds=max(settings.noshow_sweep_interval_seconds, 30)
    )

    if not await lock.acquire():
        logger.debug("Sweep lock held by another process, skipping cycle")
        return 0

    try:
        result = await run_no_show_sweep(
            async_session_factory, publish=publish_committed
        )
    finally:
        await lock.release()
    return result.processed

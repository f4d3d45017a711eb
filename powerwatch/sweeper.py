"""
Background loops on the asyncio scheduler: liveness sweep every sweep_interval,
snapshot flush every flush_interval. Both run until cancelled; a failing round is
logged and the loop carries on.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from powerwatch.models import Event
from powerwatch.tracker import LivenessTracker

logger = logging.getLogger("powerwatch.sweeper")

DEFAULT_SWEEP_INTERVAL = 60.0


class LivenessSweeper:
    """The only path from connected to disconnected."""

    def __init__(self, tracker: LivenessTracker, interval: float = DEFAULT_SWEEP_INTERVAL) -> None:
        self.tracker = tracker
        self.interval = max(1.0, float(interval))

    async def sweep_once(self, now: Optional[datetime] = None) -> list[Event]:
        events = await self.tracker.sweep(now)
        if events:
            logger.info("Sweep demoted %d client(s)", len(events))
        else:
            logger.debug("Sweep: nothing timed out")
        return events

    async def run(self) -> None:
        logger.info(
            "Sweeper started: every %.0fs, timeout %.0fs",
            self.interval,
            self.tracker.liveness_timeout.total_seconds(),
        )
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.exception("Sweep failed: %s", e)


async def run_flush_loop(tracker: LivenessTracker, interval: float) -> None:
    """Periodic flush for batched backends; the final flush happens in tracker.close()."""
    interval = max(1.0, float(interval))
    while True:
        await asyncio.sleep(interval)
        try:
            await tracker.flush()
        except Exception as e:
            logger.exception("Periodic flush failed: %s", e)


async def run_background(tracker: LivenessTracker, sweep_interval: float) -> None:
    """Sweeper plus (unless write-through) flush loop; cancelling this cancels both."""
    tasks = [asyncio.create_task(LivenessSweeper(tracker, sweep_interval).run())]
    if not tracker.flush_policy.write_through:
        tasks.append(asyncio.create_task(run_flush_loop(tracker, tracker.flush_policy.interval)))
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background loops stopped")
        raise

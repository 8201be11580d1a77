"""
Ping Scheduler - one independent probe loop per target.

Each target's loop waits one interval, probes, and hands the sample on.
The loop is sequential, so a slow probe pushes the next tick back rather
than overlapping it. The interval is re-read every cycle, which is how the
visible/hidden cadence switch takes effect.
"""

import asyncio
from typing import Callable, Dict, List, Optional

from loguru import logger

from .models import Sample
from .prober import PingProber

MIN_INTERVAL = 1.0


class ThresholdAlert:
    """
    Edge-triggered alert for one target.

    A sample crosses the threshold when it failed or its latency is above
    the limit. The first crossing fires; later crossings stay silent until
    ``rearm_samples`` consecutive good samples have been seen.
    """

    def __init__(self):
        self.armed = True
        self._good_streak = 0

    def update(self, sample: Sample, threshold_ms: float, rearm_samples: int = 1) -> bool:
        """Feed one sample. Returns True when a notification should fire."""
        crossed = sample.latency_ms is None or sample.latency_ms > threshold_ms
        if crossed:
            self._good_streak = 0
            if self.armed:
                self.armed = False
                return True
            return False

        self._good_streak += 1
        if not self.armed and self._good_streak >= max(1, rearm_samples):
            self.armed = True
        return False


class PingScheduler:
    """Drives periodic probes for every active target."""

    def __init__(
        self,
        prober: PingProber,
        on_sample: Callable[[str, Sample], None],
        interval: Callable[[], float],
    ):
        self.prober = prober
        self.on_sample = on_sample
        self.interval = interval

        self._targets: List[str] = []
        self._tasks: Dict[str, asyncio.Future] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def targets(self) -> List[str]:
        return list(self._targets)

    @property
    def running(self) -> bool:
        return self._running

    # ──────────────────────────────────────────────────────────────────
    # Target set
    # ──────────────────────────────────────────────────────────────────

    def add_target(self, target: str):
        if target in self._targets:
            return
        self._targets.append(target)
        if self._running:
            self._spawn(target)

    def remove_target(self, target: str):
        if target not in self._targets:
            return
        self._targets.remove(target)
        task = self._tasks.pop(target, None)
        if task is not None:
            task.cancel()
        self._locks.pop(target, None)
        logger.debug(f"Ping loop for {target} stopped")

    # ──────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────

    def start(self):
        """Spawn a loop per target. Must be called with an event loop running."""
        if self._running:
            return
        self._stop_event = asyncio.Event()
        self._running = True
        for target in self._targets:
            self._spawn(target)
        logger.info(f"Ping scheduler started for {len(self._targets)} targets")

    async def stop(self, grace: Optional[float] = None):
        """
        Stop issuing probes. In-flight probes get ``grace`` seconds (default:
        the prober's worst case) to finish before they are cancelled.
        """
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        tasks = list(self._tasks.values())
        self._tasks.clear()
        if not tasks:
            return

        grace = self.prober.worst_case_duration if grace is None else grace
        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} probes still running at shutdown")
        logger.info("Ping scheduler stopped")

    # ──────────────────────────────────────────────────────────────────
    # Cycles
    # ──────────────────────────────────────────────────────────────────

    async def run_cycle(self, target: str) -> Sample:
        """Probe once and deliver the sample. Serialized per target."""
        lock = self._locks.setdefault(target, asyncio.Lock())
        async with lock:
            sample = await self.prober.probe(target)
            self.on_sample(target, sample)
        return sample

    def current_interval(self) -> float:
        try:
            return max(MIN_INTERVAL, float(self.interval()))
        except (TypeError, ValueError) as e:
            logger.warning(f"Bad ping interval ({e}), using {MIN_INTERVAL}s")
            return MIN_INTERVAL

    def _spawn(self, target: str):
        self._tasks[target] = asyncio.ensure_future(self._run_target(target))
        logger.debug(f"Ping loop for {target} started")

    async def _run_target(self, target: str):
        while self._running and target in self._targets:
            if await self._wait(self.current_interval()):
                break
            try:
                await self.run_cycle(target)
            except Exception:
                logger.exception(f"Ping cycle for {target} failed")

    async def _wait(self, seconds: float) -> bool:
        """Sleep one interval. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

"""
Rolling per-target sample history.

Each target keeps a time-ordered deque bounded to 24 hours (and a hard sample
cap). Only the scheduler's sample path appends; readers always get a fresh
list, so they never observe a half-applied append or eviction.
"""

from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional

from loguru import logger

from .models import Sample, utcnow

RETENTION = timedelta(hours=24)
SNAPSHOT_VERSION = 1


class HistoryStore:
    """Bounded, time-ordered sample log per target."""

    def __init__(
        self,
        retention: timedelta = RETENTION,
        max_samples: int = 43200,
        evict_every: int = 60,
    ):
        self.retention = retention
        self.max_samples = max_samples
        self.evict_every = evict_every
        self._windows: Dict[str, Deque[Sample]] = {}
        self._appends_since_evict = 0

    def __len__(self) -> int:
        return sum(len(w) for w in self._windows.values())

    def targets(self) -> List[str]:
        return list(self._windows)

    # ──────────────────────────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────────────────────────

    def append(self, target: str, sample: Sample) -> Sample:
        """
        Append a sample to ``target``'s window and return what was stored.

        A timestamp earlier than the newest stored sample (wall clock stepped
        backwards) is clamped so the window stays non-decreasing.
        """
        window = self._windows.get(target)
        if window is None:
            window = self._windows[target] = deque(maxlen=self.max_samples)

        if window and sample.timestamp < window[-1].timestamp:
            logger.debug(f"Clamping out-of-order sample for {target}")
            sample = replace(sample, timestamp=window[-1].timestamp)
        window.append(sample)

        self._appends_since_evict += 1
        if self._appends_since_evict >= self.evict_every:
            self.evict()
        return sample

    def evict(self, now: Optional[datetime] = None) -> int:
        """Drop samples older than the retention bound. Returns how many went."""
        cutoff = (now or utcnow()) - self.retention
        removed = 0
        for target, window in list(self._windows.items()):
            while window and window[0].timestamp < cutoff:
                window.popleft()
                removed += 1
            if not window:
                del self._windows[target]
        self._appends_since_evict = 0
        if removed:
            logger.debug(f"Evicted {removed} samples older than {cutoff.isoformat()}")
        return removed

    def remove(self, target: str):
        self._windows.pop(target, None)

    def clear(self):
        self._windows.clear()
        self._appends_since_evict = 0

    # ──────────────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────────────

    def window(self, target: str, since: timedelta, now: Optional[datetime] = None) -> List[Sample]:
        """Samples with ``timestamp >= now - since``, oldest first."""
        samples = self._windows.get(target)
        if not samples:
            return []
        cutoff = (now or utcnow()) - since

        # walk back from the newest entry; the deque is time-ordered
        picked: List[Sample] = []
        for sample in reversed(samples):
            if sample.timestamp < cutoff:
                break
            picked.append(sample)
        picked.reverse()
        return picked

    def history(self, target: str) -> List[Sample]:
        return list(self._windows.get(target, ()))

    def latest(self, target: str) -> Optional[Sample]:
        samples = self._windows.get(target)
        return samples[-1] if samples else None

    # ──────────────────────────────────────────────────────────────────
    # Persistence
    # ──────────────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready copy of the whole store."""
        return {
            "version": SNAPSHOT_VERSION,
            "targets": {
                target: [s.to_dict() for s in window]
                for target, window in self._windows.items()
            },
        }

    def restore(
        self,
        data: Any,
        now: Optional[datetime] = None,
        targets: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Replace the store's contents from a snapshot.

        Samples older than the retention bound and malformed entries are
        dropped. When ``targets`` is given, history for any other target is
        discarded. Returns the number of samples loaded.
        """
        self.clear()
        if not isinstance(data, dict) or not isinstance(data.get("targets"), dict):
            if data:
                logger.warning("History snapshot has an unexpected shape, starting empty")
            return 0

        cutoff = (now or utcnow()) - self.retention
        wanted = set(targets) if targets is not None else None
        loaded = skipped = 0
        for target, entries in data["targets"].items():
            if wanted is not None and target not in wanted:
                logger.debug(f"Dropping stored history for unmonitored target {target}")
                continue
            if not isinstance(entries, list):
                skipped += 1
                continue
            samples = []
            for entry in entries:
                try:
                    sample = Sample.from_dict(entry)
                except (AttributeError, KeyError, TypeError, ValueError):
                    skipped += 1
                    continue
                if sample.timestamp >= cutoff:
                    samples.append(sample)
            samples.sort(key=lambda s: s.timestamp)
            if samples:
                self._windows[str(target)] = deque(samples[-self.max_samples:], maxlen=self.max_samples)
                loaded += len(self._windows[str(target)])

        if skipped:
            logger.warning(f"Skipped {skipped} malformed history entries")
        logger.info(f"Restored {loaded} samples for {len(self._windows)} targets")
        return loaded

"""
Shared fakes for the engine tests. Nothing here touches the network.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import pytest

from pingwatch.core.errors import ResolutionError
from pingwatch.core.events import EventSink, Notifier
from pingwatch.core.models import Identity, ProbeMethod, Sample, utcnow
from pingwatch.core.prober import PingProber
from pingwatch.core.storage import StateStorage

NOW = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds_before_now: float) -> datetime:
    return NOW - timedelta(seconds=seconds_before_now)


def make_sample(target: str, latency: Optional[float], when: datetime = NOW) -> Sample:
    method = ProbeMethod.ICMP if latency is not None else None
    return Sample(timestamp=when, target=target, latency_ms=latency, method=method)


class RecordingSink(EventSink):
    def __init__(self):
        self.pings: List[tuple] = []
        self.site_snapshots: List[dict] = []
        self.network_events: List = []

    def ping_update(self, target, sample):
        self.pings.append((target, sample))

    def site_status_update(self, statuses):
        self.site_snapshots.append(statuses)

    def network_change(self, event):
        self.network_events.append(event)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages: List[tuple] = []

    def notify(self, title, message):
        self.messages.append((title, message))


class ScriptedProber(PingProber):
    """Returns samples from a list of latencies; None means a failed probe."""

    def __init__(self, latencies: Iterable[Optional[float]] = (), delay: float = 0.0):
        super().__init__(timeout=0.1)
        self.latencies = list(latencies)
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def probe(self, target):
        self.calls.append(target)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            latency = self.latencies.pop(0) if self.latencies else 10.0
            return make_sample(target, latency, when=utcnow())
        finally:
            self.in_flight -= 1


class FakeResolver:
    """Yields scripted identities; an exception instance in the script is raised."""

    timeout = 0.1

    def __init__(self, script: Iterable = ()):
        self.script = list(script)
        self.calls = 0

    async def resolve(self):
        self.calls += 1
        if not self.script:
            raise ResolutionError("script exhausted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def identity(address="203.0.113.5", country="Portugal", code="PT", isp="MEO", city=None) -> Identity:
    return Identity(address=address, country=country, country_code=code, city=city, isp=isp)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def storage(tmp_path) -> StateStorage:
    return StateStorage(tmp_path)

from __future__ import annotations

import asyncio

import aiohttp
import pytest

from conftest import NOW, at

from pingwatch.core import sites as sites_module
from pingwatch.core.errors import ConfigError
from pingwatch.core.models import SiteMonitor
from pingwatch.core.sites import SiteUptimeProber, next_status


class ScriptedSites(SiteUptimeProber):
    """Site prober with per-URL scripted results instead of HTTP."""

    def __init__(self, script):
        self.published = []
        super().__init__(on_statuses=self.published.append)
        self.script = script
        self.checked = []

    async def check_site(self, monitor):
        self.checked.append(monitor.url)
        result = self.script[monitor.url].pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def test_down_transition_stamps_last_down() -> None:
    up = next_status(None, "https://a.example", True, 80.0, at(120))
    down = next_status(up, "https://a.example", False, None, at(60))
    recovered = next_status(down, "https://a.example", True, 90.0, NOW)

    assert up.last_down is None
    assert down.last_down == at(60)
    assert recovered.is_up
    assert recovered.last_down == at(60)


def test_staying_down_keeps_first_down_time() -> None:
    down = next_status(None, "u", False, None, at(120))
    still_down = next_status(down, "u", False, None, at(60))

    assert still_down.last_down == at(120)
    assert still_down.last_check == at(60)


def test_check_all_publishes_one_snapshot_per_cycle() -> None:
    prober = ScriptedSites({
        "https://a.example": [(True, 50.0), (False, None), (True, 40.0)],
        "https://b.example": [(True, 20.0), (True, 25.0), (True, 30.0)],
    })
    prober.add_monitor(SiteMonitor("https://a.example", "A"))
    prober.add_monitor(SiteMonitor("https://b.example"))

    async def run():
        for _ in range(3):
            await prober.check_all()

    asyncio.run(run())

    assert len(prober.published) == 3
    assert set(prober.published[0]) == {"https://a.example", "https://b.example"}
    final = prober.statuses()["https://a.example"]
    assert final.is_up
    assert final.last_down == prober.published[1]["https://a.example"].last_check
    assert prober.statuses()["https://b.example"].last_down is None


def test_check_error_keeps_previous_status() -> None:
    prober = ScriptedSites({"https://a.example": [(True, 50.0), RuntimeError("parser bug")]})
    prober.add_monitor(SiteMonitor("https://a.example"))

    async def run():
        await prober.check_all()
        before = prober.statuses()["https://a.example"]
        await prober.check_all()
        return before

    before = asyncio.run(run())

    assert prober.statuses()["https://a.example"] == before


def test_disabled_monitors_are_skipped() -> None:
    prober = ScriptedSites({"https://a.example": [], "https://b.example": [(True, 5.0)]})
    prober.add_monitor(SiteMonitor("https://a.example", enabled=False))
    prober.add_monitor(SiteMonitor("https://b.example"))

    asyncio.run(prober.check_all())

    assert prober.checked == ["https://b.example"]


def test_monitor_set_is_capped_at_ten() -> None:
    prober = ScriptedSites({})
    for i in range(10):
        prober.add_monitor(SiteMonitor(f"https://site{i}.example"))

    with pytest.raises(ConfigError, match="At most 10"):
        prober.add_monitor(SiteMonitor("https://one-too-many.example"))

    assert len(prober.monitors()) == 10


@pytest.mark.parametrize("url", ["", "ftp://example.com", "example.com", "https://"])
def test_invalid_urls_are_rejected(url) -> None:
    prober = ScriptedSites({})

    with pytest.raises(ConfigError):
        prober.add_monitor(SiteMonitor(url))

    assert prober.monitors() == []


def test_duplicates_and_unknown_removals_are_rejected() -> None:
    prober = ScriptedSites({})
    prober.add_monitor(SiteMonitor("https://a.example"))

    with pytest.raises(ConfigError):
        prober.add_monitor(SiteMonitor("https://a.example"))
    with pytest.raises(ConfigError):
        prober.remove_monitor("https://b.example")


def test_removing_a_monitor_drops_its_status() -> None:
    prober = ScriptedSites({"https://a.example": [(False, None)]})
    prober.add_monitor(SiteMonitor("https://a.example"))
    asyncio.run(prober.check_all())

    prober.remove_monitor("https://a.example")

    assert prober.statuses() == {}


def test_unparseable_interval_falls_back_to_default() -> None:
    prober = SiteUptimeProber(on_statuses=lambda s: None, interval=lambda: "soon")

    assert prober.current_interval() == sites_module.DEFAULT_INTERVAL


def test_loop_keeps_running_with_unparseable_interval() -> None:
    prober = ScriptedSites({"https://a.example": [(True, 5.0)]})
    prober.interval = lambda: "soon"
    prober.add_monitor(SiteMonitor("https://a.example"))

    async def run():
        prober.start()
        await asyncio.sleep(0.05)
        await prober.stop()

    asyncio.run(run())

    assert len(prober.published) == 1


class _FakeContent:
    async def read(self, n=-1):
        return b"<html>"


class _FakeResponse:
    def __init__(self, status):
        self.status = status
        self.content = _FakeContent()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FailingRequest:
    def __init__(self, error):
        self.error = error

    async def __aenter__(self):
        raise self.error

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    def __init__(self, request):
        self.request = request
        self.urls = []
        self.closed = False

    def get(self, url, **kwargs):
        self.urls.append(url)
        return self.request

    async def close(self):
        self.closed = True


def _prober_with(request, monkeypatch) -> SiteUptimeProber:
    prober = SiteUptimeProber(on_statuses=lambda s: None)
    session = _FakeSession(request)

    async def get_session():
        return session

    monkeypatch.setattr(prober, "_get_session", get_session)
    return prober


@pytest.mark.parametrize("status, is_up", [
    (200, True),
    (204, True),
    (301, True),
    (399, True),
    (404, False),
    (500, False),
    (503, False),
])
def test_http_status_decides_up_or_down(status, is_up, monkeypatch) -> None:
    prober = _prober_with(_FakeResponse(status), monkeypatch)

    up, latency = asyncio.run(prober.check_site(SiteMonitor("https://a.example")))

    assert up is is_up
    assert latency is not None and latency >= 0


@pytest.mark.parametrize("error", [
    asyncio.TimeoutError(),
    aiohttp.ClientConnectionError("connection refused"),
    aiohttp.ClientPayloadError("truncated body"),
])
def test_request_failures_report_down_without_latency(error, monkeypatch) -> None:
    prober = _prober_with(_FailingRequest(error), monkeypatch)

    assert asyncio.run(prober.check_site(SiteMonitor("https://a.example"))) == (False, None)


def test_real_check_feeds_the_status_map(monkeypatch) -> None:
    published = []
    prober = _prober_with(_FakeResponse(503), monkeypatch)
    prober.on_statuses = published.append
    prober.add_monitor(SiteMonitor("https://a.example"))

    asyncio.run(prober.check_all())

    status = published[0]["https://a.example"]
    assert not status.is_up
    assert status.last_down == status.last_check

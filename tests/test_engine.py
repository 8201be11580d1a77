from __future__ import annotations

import asyncio

import pytest

from conftest import FakeResolver, ScriptedProber, identity, make_sample

from pingwatch.core.engine import NetworkEngine
from pingwatch.core.errors import ConfigError
from pingwatch.core.models import ChangeType, utcnow
from pingwatch.core.storage import StateStorage


def _engine(storage, sink, notifier, latencies=(), script=()) -> NetworkEngine:
    engine = NetworkEngine(
        storage=storage,
        sink=sink,
        notifier=notifier,
        prober=ScriptedProber(latencies),
        resolver=FakeResolver(script),
    )
    engine.load()
    return engine


def _cycles(engine, target, count):
    async def run():
        for _ in range(count):
            await engine.scheduler.run_cycle(target)
        if engine._save_tasks:
            await asyncio.gather(*engine._save_tasks)

    asyncio.run(run())


def test_fresh_install_uses_default_target(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)

    assert engine.get_targets() == ['8.8.8.8']
    assert engine.get_primary_target() == '8.8.8.8'
    assert engine.get_site_monitors() == []
    assert engine.current_identity is None


def test_samples_flow_into_history_statistics_and_sink(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier, latencies=[40.0, None, 60.0])
    engine.add_target("1.1.1.1")

    _cycles(engine, "1.1.1.1", 3)

    stats = engine.get_statistics("1.1.1.1", minutes=5)
    assert (stats.min_ms, stats.max_ms, stats.avg_ms) == (40.0, 60.0, 50.0)
    assert stats.packet_loss_pct == pytest.approx(33.33, abs=0.01)
    assert (stats.failed_pings, stats.total_pings) == (1, 3)

    assert [s.latency_ms for s in engine.get_ping_history("1.1.1.1")] == [40.0, None, 60.0]
    assert engine.get_current_ping("1.1.1.1").latency_ms == 60.0
    assert [t for t, _ in sink.pings] == ["1.1.1.1"] * 3


def test_threshold_notification_fires_once_per_crossing(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier, latencies=[50.0, 450.0, 500.0, 30.0, 600.0])

    _cycles(engine, "8.8.8.8", 5)

    titles = [title for title, _ in notifier.messages]
    assert titles == ["PingWatch Alert", "PingWatch Alert"]
    assert "450ms" in notifier.messages[0][1]


def test_disabled_notifications_are_not_delivered(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier, latencies=[None])
    engine.set_notifications_enabled(False)

    _cycles(engine, "8.8.8.8", 1)

    assert notifier.messages == []


def test_sink_failure_does_not_lose_samples(storage, notifier) -> None:
    class BrokenSink:
        def ping_update(self, target, sample):
            raise RuntimeError("window closed")

    engine = _engine(storage, BrokenSink(), notifier, latencies=[12.0])

    _cycles(engine, "8.8.8.8", 1)

    assert len(engine.get_ping_history("8.8.8.8")) == 1


def test_invalid_mutations_leave_state_unchanged(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)
    before = engine.settings.to_dict()

    with pytest.raises(ConfigError):
        engine.add_target("not a host")
    with pytest.raises(ConfigError):
        engine.add_target("8.8.8.8")
    with pytest.raises(ConfigError):
        engine.set_notification_threshold(0)
    with pytest.raises(ConfigError):
        engine.set_notification_threshold(20000)
    with pytest.raises(ConfigError):
        engine.set_display_mode("fullscreen")
    with pytest.raises(ConfigError):
        engine.set_ping_intervals(visible=2, hidden=0)
    with pytest.raises(ConfigError):
        engine.set_vpn_settings({"check_interval": 2})
    with pytest.raises(ConfigError):
        engine.set_primary_target("9.9.9.9")
    with pytest.raises(ConfigError):
        engine.add_site_monitor("ftp://example.com")

    assert engine.settings.to_dict() == before
    assert engine.get_targets() == ['8.8.8.8']
    assert not storage.file.exists()


def test_remove_target(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)
    engine.add_target("1.1.1.1")
    engine.set_primary_target("1.1.1.1")
    _cycles(engine, "1.1.1.1", 2)

    engine.remove_target("1.1.1.1")

    assert engine.get_targets() == ['8.8.8.8']
    assert engine.get_primary_target() == '8.8.8.8'
    assert engine.get_ping_history("1.1.1.1") == []
    with pytest.raises(ConfigError, match="At least one"):
        engine.remove_target("8.8.8.8")
    with pytest.raises(ConfigError):
        engine.remove_target("1.1.1.1")


def test_state_survives_a_restart(tmp_path, sink, notifier) -> None:
    first = _engine(StateStorage(tmp_path), sink, notifier, latencies=[21.0, 22.0])
    first.add_target("one.one.one.one")
    first.set_notification_threshold(250)
    first.set_vpn_settings({"enabled": True, "expected_country": "NL"})
    first.add_site_monitor("https://example.com", "Example")
    _cycles(first, "one.one.one.one", 2)
    assert first.save_now()

    second = _engine(StateStorage(tmp_path), sink, notifier)

    assert second.get_targets() == ['8.8.8.8', 'one.one.one.one']
    assert second.get_settings()['notification_threshold_ms'] == 250
    assert second.get_vpn_settings().enabled
    assert second.get_vpn_settings().expected_country == "NL"
    assert [m.label for m in second.get_site_monitors()] == ["Example"]
    assert [s.latency_ms for s in second.get_ping_history("one.one.one.one")] == [21.0, 22.0]


def test_corrupt_state_file_starts_fresh(storage, sink, notifier) -> None:
    storage.data_dir.mkdir(parents=True, exist_ok=True)
    storage.file.write_text('{"version": 1, "history": ', encoding="utf-8")

    engine = _engine(storage, sink, notifier)

    assert engine.get_targets() == ['8.8.8.8']
    assert len(engine.store) == 0


def test_snapshot_is_written_periodically(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)

    _cycles(engine, "8.8.8.8", NetworkEngine.SNAPSHOT_EVERY - 1)
    assert not storage.file.exists()

    _cycles(engine, "8.8.8.8", 1)
    assert storage.file.exists()
    assert len(storage.load()["history"]["targets"]["8.8.8.8"]) == NetworkEngine.SNAPSHOT_EVERY


def test_window_visibility_switches_ping_interval(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)
    engine.set_ping_intervals(visible=3, hidden=15)

    assert engine.scheduler.current_interval() == 15
    engine.set_window_visible(True)
    assert engine.scheduler.current_interval() == 3
    engine.set_window_visible(False)
    assert engine.scheduler.current_interval() == 15


def test_identity_change_publishes_and_notifies(storage, sink, notifier) -> None:
    us = identity(address="198.51.100.7", country="United States", code="US", isp="Mullvad")
    engine = _engine(storage, sink, notifier, script=[identity(), us])
    engine.set_vpn_settings({"enabled": True})

    async def run():
        await engine.identity.check_once()
        await engine.identity.check_once()

    asyncio.run(run())

    assert [e.change_type for e in sink.network_events] == [ChangeType.INITIAL, ChangeType.COUNTRY_CHANGED]
    assert [title for title, _ in notifier.messages] == ["VPN Protection"]
    assert engine.pending_identity_alert.current == us

    engine.acknowledge_ip_change()
    assert engine.pending_identity_alert is None
    assert engine.current_identity == us


def test_expected_country_suppresses_the_alert(storage, sink, notifier) -> None:
    us = identity(address="198.51.100.7", country="United States", code="US")
    engine = _engine(storage, sink, notifier, script=[identity(), us])
    engine.set_vpn_settings({"enabled": True, "expected_country": "US"})

    async def run():
        await engine.identity.check_once()
        await engine.identity.check_once()

    asyncio.run(run())

    assert sink.network_events[-1].is_expected
    assert notifier.messages == []


def test_start_and_shutdown_flush_state(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)

    async def run():
        async with engine:
            await asyncio.sleep(0.05)

    asyncio.run(run())

    assert storage.file.exists()
    assert not engine.scheduler.running


def test_malformed_history_entries_do_not_block_startup(storage, sink, notifier) -> None:
    good = make_sample("8.8.8.8", 9.0, utcnow()).to_dict()
    storage.save({"version": 1, "history": {"version": 1, "targets": {
        "8.8.8.8": [42, "garbage", {"timestamp": 123, "target": "8.8.8.8"}, good],
    }}})

    engine = _engine(storage, sink, notifier)

    assert [s.latency_ms for s in engine.get_ping_history("8.8.8.8")] == [9.0]


def test_history_of_unmonitored_targets_is_dropped_on_load(storage, sink, notifier) -> None:
    now = utcnow()
    storage.save({"version": 1, "history": {"version": 1, "targets": {
        "8.8.8.8": [make_sample("8.8.8.8", 9.0, now).to_dict()],
        "10.0.0.1": [make_sample("10.0.0.1", 3.0, now).to_dict()],
    }}})

    engine = _engine(storage, sink, notifier)

    assert engine.store.targets() == ["8.8.8.8"]
    assert "10.0.0.1" not in engine.document()["history"]["targets"]


def test_invalid_stored_threshold_keeps_alerts_and_snapshots_working(storage, sink, notifier) -> None:
    storage.save({"version": 1, "settings": {"notification_threshold_ms": "400"}})
    engine = _engine(storage, sink, notifier, latencies=[500.0])

    _cycles(engine, "8.8.8.8", NetworkEngine.SNAPSHOT_EVERY)

    assert engine.get_settings()['notification_threshold_ms'] == 400
    assert [title for title, _ in notifier.messages] == ["PingWatch Alert"]
    assert len(storage.load()["history"]["targets"]["8.8.8.8"]) == NetworkEngine.SNAPSHOT_EVERY


def test_failing_alert_check_does_not_stop_snapshots(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)
    engine.settings.set('notification_threshold_ms', "not a number")

    _cycles(engine, "8.8.8.8", NetworkEngine.SNAPSHOT_EVERY)

    assert len(engine.get_ping_history("8.8.8.8")) == NetworkEngine.SNAPSHOT_EVERY
    assert len(sink.pings) == NetworkEngine.SNAPSHOT_EVERY
    assert storage.file.exists()


def test_invalid_site_interval_does_not_break_shutdown(storage, sink, notifier) -> None:
    engine = _engine(storage, sink, notifier)
    engine.settings.set('site_check_interval', "soon")

    async def run():
        engine.start()
        await asyncio.sleep(0.05)
        await engine.shutdown()

    asyncio.run(run())

    assert storage.file.exists()

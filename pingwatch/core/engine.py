"""
Network Engine - wires the probes, history and monitors together.

This is the surface the presentation layer talks to: pull accessors for
history, statistics and configuration, mutators for settings, and the event
sink / notifier it pushes live updates through.

Each background task owns the state it writes (scheduler → history store,
site prober → status map, identity monitor → identity). Everything runs on
one asyncio loop; readers get copies and no lock is held across I/O.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Union

from loguru import logger

from .errors import ConfigError
from .events import EventSink, LogNotifier, Notifier
from .history import HistoryStore
from .identity import IpApiResolver, NetworkIdentityMonitor
from .models import (
    ChangeType, Identity, IdentityChangeEvent, PingStatistics, Sample,
    SiteMonitor, SiteStatus,
)
from .prober import PingProber
from .scheduler import PingScheduler, ThresholdAlert
from .settings import (
    Settings, VpnSettings, validate_display_mode, validate_interval,
    validate_target, validate_threshold,
)
from .sites import SiteUptimeProber
from .statistics import Statistics
from .storage import StateStorage

DOCUMENT_VERSION = 1


class NetworkEngine:
    """Continuous network-health monitor."""

    # ~once a minute at the default 2s interval
    SNAPSHOT_EVERY = 30

    def __init__(
        self,
        storage: Optional[StateStorage] = None,
        sink: Optional[EventSink] = None,
        notifier: Optional[Notifier] = None,
        prober: Optional[PingProber] = None,
        resolver=None,
        store: Optional[HistoryStore] = None,
    ):
        self.storage = storage or StateStorage()
        self.sink = sink or EventSink()
        self.notifier = notifier or LogNotifier()

        self.settings = Settings()
        self.store = store or HistoryStore()
        self.stats = Statistics(self.store)
        self.window_visible = False

        self.scheduler = PingScheduler(
            prober or PingProber(timeout=2.0),
            on_sample=self._on_sample,
            interval=self._ping_interval,
        )
        self.identity = NetworkIdentityMonitor(
            resolver or IpApiResolver(timeout=5.0),
            on_event=self._on_identity_event,
            settings=lambda: self.settings.vpn,
        )
        self.sites = SiteUptimeProber(
            on_statuses=self._on_site_statuses,
            timeout=5.0,
            interval=lambda: self.settings.get('site_check_interval', 60),
        )

        self._alerts: Dict[str, ThresholdAlert] = {}
        self._appends_since_snapshot = 0
        self._save_lock: Optional[asyncio.Lock] = None
        self._save_tasks: Set[asyncio.Future] = set()
        self._started = False

    # ──────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────

    def load(self):
        """Restore settings and history from the state document."""
        document = self.storage.load()
        self.settings.load(document.get("settings") or {})
        self.store.restore(document.get("history") or {}, targets=self.settings.get('targets'))

        for target in self.settings.get('targets'):
            self.scheduler.add_target(target)
        for monitor in self.settings.site_monitors:
            try:
                self.sites.add_monitor(monitor)
            except ConfigError as e:
                logger.warning(f"Ignoring stored site monitor: {e}")

        logger.info(
            f"Engine loaded: {len(self.scheduler.targets)} targets, "
            f"{len(self.sites.monitors())} sites, {len(self.store)} samples"
        )

    def start(self):
        """Start all periodic tasks. Requires a running event loop."""
        if self._started:
            return
        self._started = True
        self.scheduler.start()
        self.identity.start()
        self.sites.start()
        logger.info("Engine started")

    async def shutdown(self):
        """Stop every task, let in-flight probes finish, flush a final snapshot."""
        if self._started:
            self._started = False
            await asyncio.gather(
                self.scheduler.stop(),
                self.identity.stop(),
                self.sites.stop(),
            )
        if self._save_tasks:
            await asyncio.gather(*self._save_tasks, return_exceptions=True)
        await self.save()
        logger.info("Engine stopped")

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # ──────────────────────────────────────────────────────────────────
    # Persistence
    # ──────────────────────────────────────────────────────────────────

    def document(self) -> Dict[str, Any]:
        return {
            "version": DOCUMENT_VERSION,
            "history": self.store.snapshot(),
            "settings": self.settings.to_dict(),
        }

    async def save(self) -> bool:
        """
        Snapshot on the loop, encode and write in a worker thread.
        A failed write is logged; the next cadence retries.
        """
        document = self.document()
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()
        loop = asyncio.get_running_loop()
        async with self._save_lock:
            try:
                await loop.run_in_executor(None, self.storage.save, document)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Saving state to {self.storage.file} failed: {e}")
                return False
        logger.debug(f"State saved ({len(self.store)} samples)")
        return True

    def save_now(self) -> bool:
        """Blocking save, for use outside the event loop."""
        try:
            self.storage.save(self.document())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Saving state to {self.storage.file} failed: {e}")
            return False
        return True

    def _schedule_save(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save_now()
            return
        task = loop.create_task(self.save())
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    # ──────────────────────────────────────────────────────────────────
    # Task callbacks
    # ──────────────────────────────────────────────────────────────────

    def _ping_interval(self) -> float:
        return self.settings.ping_interval(self.window_visible)

    def _on_sample(self, target: str, sample: Sample):
        if target not in self.scheduler.targets:
            return
        stored = self.store.append(target, sample)

        self._appends_since_snapshot += 1
        if self._appends_since_snapshot >= self.SNAPSHOT_EVERY:
            self._appends_since_snapshot = 0
            self._schedule_save()

        self._publish(self.sink.ping_update, target, stored)
        try:
            self._check_threshold(target, stored)
        except Exception:
            logger.exception(f"Latency alert check for {target} failed")

    def _check_threshold(self, target: str, sample: Sample):
        alert = self._alerts.setdefault(target, ThresholdAlert())
        threshold = self.settings.get('notification_threshold_ms', 400)
        rearm = self.settings.get('alert_rearm_samples', 1)
        if not alert.update(sample, threshold, rearm):
            return

        if sample.latency_ms is None:
            message = f"{target} is not responding"
        else:
            message = f"High latency to {target}: {sample.latency_ms:.0f}ms (threshold {threshold}ms)"
        logger.warning(message)
        self._notify("PingWatch Alert", message)

    def _on_identity_event(self, event: IdentityChangeEvent, alerting: bool):
        self._publish(self.sink.network_change, event)
        if not alerting:
            return
        current = event.current
        if event.change_type is ChangeType.COUNTRY_CHANGED:
            message = (
                f"Public country changed to {current.country or current.country_code} "
                f"({current.address}). Your VPN may have disconnected."
            )
        else:
            message = f"Public network changed: {event.change_type.value} ({current.address})"
        self._notify("VPN Protection", message)

    def _on_site_statuses(self, statuses: Dict[str, SiteStatus]):
        self._publish(self.sink.site_status_update, statuses)

    def _publish(self, emit, *payload):
        try:
            emit(*payload)
        except Exception:
            logger.exception("Event sink failed")

    def _notify(self, title: str, message: str):
        if not self.settings.get('notifications_enabled', True):
            return
        try:
            self.notifier.notify(title, message)
        except Exception as e:
            logger.error(f"Notification delivery failed: {e}")

    # ──────────────────────────────────────────────────────────────────
    # Pull surface
    # ──────────────────────────────────────────────────────────────────

    def get_ping_history(self, target: str, minutes: Optional[float] = None) -> List[Sample]:
        if minutes is None:
            return self.store.history(target)
        return self.store.window(target, timedelta(minutes=minutes))

    def get_statistics(self, target: str, minutes: float = 5) -> PingStatistics:
        return self.stats.statistics(target, timedelta(minutes=minutes))

    def get_current_ping(self, target: Optional[str] = None) -> Optional[Sample]:
        return self.store.latest(target or self.get_primary_target())

    def get_targets(self) -> List[str]:
        return self.scheduler.targets

    def get_primary_target(self) -> str:
        return self.settings.get('primary_target')

    def get_site_monitors(self) -> List[SiteMonitor]:
        return self.sites.monitors()

    def get_site_statuses(self) -> Dict[str, SiteStatus]:
        return self.sites.statuses()

    def get_vpn_settings(self) -> VpnSettings:
        return self.settings.vpn

    def get_settings(self) -> Dict[str, Any]:
        return {
            'primary_target': self.get_primary_target(),
            'notification_threshold_ms': self.settings.get('notification_threshold_ms'),
            'display_mode': self.settings.get('display_mode'),
            'notifications_enabled': self.settings.get('notifications_enabled'),
            'ping_interval_visible': self.settings.get('ping_interval_visible'),
            'ping_interval_hidden': self.settings.get('ping_interval_hidden'),
        }

    @property
    def current_identity(self) -> Optional[Identity]:
        return self.identity.current

    @property
    def pending_identity_alert(self) -> Optional[IdentityChangeEvent]:
        return self.identity.pending_alert

    # ──────────────────────────────────────────────────────────────────
    # Mutators
    # ──────────────────────────────────────────────────────────────────

    def add_target(self, target: str) -> str:
        target = validate_target(target)
        if target in self.scheduler.targets:
            raise ConfigError(f"{target} is already monitored")
        self.scheduler.add_target(target)
        self.settings.set('targets', self.scheduler.targets)
        logger.info(f"Target added: {target}")
        self._schedule_save()
        return target

    def remove_target(self, target: str):
        targets = self.scheduler.targets
        if target not in targets:
            raise ConfigError(f"{target} is not monitored")
        if len(targets) == 1:
            raise ConfigError("At least one target must remain")

        self.scheduler.remove_target(target)
        self.store.remove(target)
        self._alerts.pop(target, None)
        self.settings.set('targets', self.scheduler.targets)
        if self.get_primary_target() == target:
            self.settings.set('primary_target', self.scheduler.targets[0])
        logger.info(f"Target removed: {target}")
        self._schedule_save()

    def set_primary_target(self, target: str):
        if target not in self.scheduler.targets:
            raise ConfigError(f"{target} is not monitored")
        self.settings.set('primary_target', target)
        self._schedule_save()

    def add_site_monitor(self, url: str, display_name: Optional[str] = None, enabled: bool = True) -> SiteMonitor:
        monitor = self.sites.add_monitor(SiteMonitor(url=url, display_name=display_name, enabled=enabled))
        self._store_site_monitors()
        self.sites.wake()
        return monitor

    def remove_site_monitor(self, url: str):
        self.sites.remove_monitor(url)
        self._store_site_monitors()
        self._publish(self.sink.site_status_update, self.sites.statuses())

    def set_site_monitor_enabled(self, url: str, enabled: bool) -> SiteMonitor:
        monitor = self.sites.set_enabled(url, enabled)
        self._store_site_monitors()
        return monitor

    def _store_site_monitors(self):
        self.settings.set('site_monitors', [m.to_dict() for m in self.sites.monitors()])
        self._schedule_save()

    def set_vpn_settings(self, vpn: Union[VpnSettings, Dict[str, Any]]) -> VpnSettings:
        """Replace the VPN policy. A dict may be partial; missing keys keep their value."""
        if isinstance(vpn, VpnSettings):
            vpn = vpn.to_dict()
        if not isinstance(vpn, dict):
            raise ConfigError("VPN settings must be an object")
        merged = {**self.settings.vpn.to_dict(), **vpn}
        validated = VpnSettings.from_dict(merged)

        self.settings.set('vpn', validated.to_dict())
        logger.info(
            f"VPN protection {'enabled' if validated.enabled else 'disabled'}"
            + (f", expecting {validated.expected_country}" if validated.expected_country else "")
        )
        self.identity.wake()
        self._schedule_save()
        return validated

    def acknowledge_ip_change(self) -> Optional[IdentityChangeEvent]:
        return self.identity.acknowledge()

    def set_window_visible(self, visible: bool):
        """Switch the ping cadence; applies from the next tick."""
        self.window_visible = bool(visible)

    def set_notification_threshold(self, threshold_ms: int):
        self.settings.set('notification_threshold_ms', validate_threshold(threshold_ms))
        self._schedule_save()

    def set_display_mode(self, mode: str):
        self.settings.set('display_mode', validate_display_mode(mode))
        self._schedule_save()

    def set_ping_intervals(self, visible: Optional[float] = None, hidden: Optional[float] = None):
        if visible is not None:
            validate_interval(visible, "Visible ping interval")
        if hidden is not None:
            validate_interval(hidden, "Hidden ping interval")
        if visible is not None:
            self.settings.set('ping_interval_visible', visible)
        if hidden is not None:
            self.settings.set('ping_interval_hidden', hidden)
        self._schedule_save()

    def set_notifications_enabled(self, enabled: bool):
        self.settings.set('notifications_enabled', bool(enabled))
        self._schedule_save()

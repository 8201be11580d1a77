"""
Site Uptime Prober - periodic reachability checks for configured URLs.

All enabled sites are checked concurrently once per cycle and the whole
status map is published in one go, since consumers render it as one list.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp
from loguru import logger

from .errors import ConfigError
from .models import SiteMonitor, SiteStatus, utcnow
from .settings import MAX_SITE_MONITORS, validate_site_url

DEFAULT_INTERVAL = 60.0


def next_status(
    previous: Optional[SiteStatus],
    url: str,
    is_up: bool,
    latency_ms: Optional[float],
    checked_at: datetime,
) -> SiteStatus:
    """
    Fold one check result into the site's status. ``last_down`` is stamped
    when the site goes down and kept through later recoveries.
    """
    last_down = previous.last_down if previous else None
    if not is_up and (previous is None or previous.is_up):
        last_down = checked_at
    return SiteStatus(
        url=url,
        is_up=is_up,
        latency_ms=latency_ms,
        last_check=checked_at,
        last_down=last_down,
    )


class SiteUptimeProber:
    """Checks up to ten URLs on a fixed interval."""

    def __init__(
        self,
        on_statuses: Callable[[Dict[str, SiteStatus]], None],
        timeout: float = 5.0,
        interval: Callable[[], float] = lambda: 60.0,
        max_concurrent: int = 5,
    ):
        self.on_statuses = on_statuses
        self.timeout = timeout
        self.interval = interval
        self.semaphore = asyncio.Semaphore(max_concurrent)

        self._monitors: Dict[str, SiteMonitor] = {}
        self._statuses: Dict[str, SiteStatus] = {}

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()
        self._task: Optional[asyncio.Future] = None
        self._wake_event: Optional[asyncio.Event] = None
        self._running = False

    # ──────────────────────────────────────────────────────────────────
    # Monitor set
    # ──────────────────────────────────────────────────────────────────

    def monitors(self) -> List[SiteMonitor]:
        return list(self._monitors.values())

    def statuses(self) -> Dict[str, SiteStatus]:
        return dict(self._statuses)

    def add_monitor(self, monitor: SiteMonitor) -> SiteMonitor:
        url = validate_site_url(monitor.url)
        if url in self._monitors:
            raise ConfigError(f"Site {url} is already monitored")
        if len(self._monitors) >= MAX_SITE_MONITORS:
            raise ConfigError(f"At most {MAX_SITE_MONITORS} site monitors are allowed")
        display_name = (monitor.display_name or "").strip() or None
        monitor = SiteMonitor(url=url, display_name=display_name, enabled=monitor.enabled)
        self._monitors[url] = monitor
        logger.info(f"Site monitor added: {monitor.label}")
        return monitor

    def remove_monitor(self, url: str):
        if url not in self._monitors:
            raise ConfigError(f"Site {url} is not monitored")
        del self._monitors[url]
        self._statuses.pop(url, None)
        logger.info(f"Site monitor removed: {url}")

    def set_enabled(self, url: str, enabled: bool) -> SiteMonitor:
        monitor = self._monitors.get(url)
        if monitor is None:
            raise ConfigError(f"Site {url} is not monitored")
        monitor = SiteMonitor(url=url, display_name=monitor.display_name, enabled=bool(enabled))
        self._monitors[url] = monitor
        return monitor

    # ──────────────────────────────────────────────────────────────────
    # Checks
    # ──────────────────────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=MAX_SITE_MONITORS,
                    limit_per_host=2,
                    ttl_dns_cache=60,
                    force_close=True,
                )
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(
                        total=self.timeout,
                        connect=self.timeout / 2,
                        sock_read=self.timeout,
                    ),
                    connector=connector,
                    headers={"User-Agent": "PingWatch/1.0 (+uptime check)"},
                )
            return self._session

    async def close(self):
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def check_site(self, monitor: SiteMonitor) -> Tuple[bool, Optional[float]]:
        """GET the URL and read at most 1 KB. Returns (is_up, latency_ms)."""
        session = await self._get_session()
        start = time.monotonic()
        try:
            async with session.get(monitor.url, allow_redirects=True, max_redirects=3) as response:
                await response.content.read(1024)
                latency_ms = (time.monotonic() - start) * 1000
                return 200 <= response.status < 400, latency_ms
        except asyncio.TimeoutError:
            logger.debug(f"Site check timed out: {monitor.url}")
            return False, None
        except aiohttp.ClientError as e:
            logger.debug(f"Site check failed for {monitor.url}: {type(e).__name__}")
            return False, None

    async def _check_limited(self, monitor: SiteMonitor) -> Tuple[bool, Optional[float]]:
        async with self.semaphore:
            return await self.check_site(monitor)

    async def check_all(self) -> Dict[str, SiteStatus]:
        """Check every enabled site once and publish the full status map."""
        enabled = [m for m in self._monitors.values() if m.enabled]
        results = await asyncio.gather(
            *(self._check_limited(m) for m in enabled),
            return_exceptions=True,
        )

        checked_at = utcnow()
        for monitor, result in zip(enabled, results):
            if monitor.url not in self._monitors:
                continue    # removed while the check was running
            if isinstance(result, BaseException):
                logger.warning(f"Site check for {monitor.url} errored, keeping previous status: {result!r}")
                continue

            is_up, latency_ms = result
            previous = self._statuses.get(monitor.url)
            status = next_status(previous, monitor.url, is_up, latency_ms, checked_at)
            self._statuses[monitor.url] = status

            if previous is None or previous.is_up != is_up:
                log = logger.info if is_up else logger.warning
                log(f"Site {monitor.label} is {'UP' if is_up else 'DOWN'}")

        snapshot = self.statuses()
        self.on_statuses(snapshot)
        return snapshot

    # ──────────────────────────────────────────────────────────────────
    # Periodic loop
    # ──────────────────────────────────────────────────────────────────

    def start(self):
        if self._running:
            return
        self._running = True
        self._wake_event = asyncio.Event()
        self._task = asyncio.ensure_future(self._run())

    def current_interval(self) -> float:
        try:
            return max(1.0, float(self.interval()))
        except (TypeError, ValueError) as e:
            logger.warning(f"Bad site check interval ({e}), using {DEFAULT_INTERVAL}s")
            return DEFAULT_INTERVAL

    def wake(self):
        if self._wake_event is not None:
            self._wake_event.set()

    async def stop(self):
        if not self._running:
            return
        self._running = False
        self.wake()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=self.timeout + 1.0)
            except asyncio.TimeoutError:
                logger.warning("Site checks still running at shutdown, cancelled")
            except Exception:
                logger.exception("Site check loop had failed")
            self._task = None
        await self.close()

    async def _run(self):
        while self._running:
            if self._monitors:
                try:
                    await self.check_all()
                except Exception:
                    logger.exception("Site check cycle failed")

            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.current_interval())
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

"""
Network Identity Monitor - notices when the public egress changes.

The monitor periodically resolves the machine's public address and
geolocation and compares it with the previous observation. A country change
that doesn't match the expected-country pin is the "VPN dropped" signal.
"""

import asyncio
from datetime import datetime
from typing import Callable, Iterable, Optional

import aiohttp
from loguru import logger

from .errors import ResolutionError
from .models import ChangeType, Identity, IdentityChangeEvent, utcnow
from .settings import VpnSettings

IP_API_URL = "http://ip-api.com/json/?fields=status,message,country,countryCode,city,isp,query"


class IpApiResolver:
    """Resolves the public identity via the ip-api.com JSON endpoint."""

    def __init__(self, url: str = IP_API_URL, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout, connect=self.timeout / 2),
                    connector=aiohttp.TCPConnector(limit=1, force_close=True),
                )
            return self._session

    async def close(self):
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def resolve(self) -> Identity:
        session = await self._get_session()
        try:
            async with session.get(self.url) as response:
                if response.status != 200:
                    raise ResolutionError(f"identity lookup returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ResolutionError("identity lookup timed out") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise ResolutionError(f"identity lookup failed: {type(e).__name__}") from e

        if not isinstance(data, dict) or data.get("status") != "success":
            message = data.get("message") if isinstance(data, dict) else None
            raise ResolutionError(f"identity lookup rejected: {message or 'bad payload'}")
        if not data.get("query"):
            raise ResolutionError("identity lookup returned no address")

        return Identity(
            address=data["query"],
            country=data.get("country") or "",
            country_code=data.get("countryCode") or "",
            city=data.get("city") or None,
            isp=data.get("isp") or None,
        )


# ──────────────────────────────────────────────────────────────────────
# Transition rules
# ──────────────────────────────────────────────────────────────────────

def matches_country(identity: Identity, pin: Optional[str]) -> bool:
    if not pin:
        return False
    pin = pin.strip().casefold()
    return pin in (identity.country.casefold(), identity.country_code.casefold())


def _same_country(a: Identity, b: Identity) -> bool:
    if a.country_code and b.country_code:
        return a.country_code.casefold() == b.country_code.casefold()
    return a.country.casefold() == b.country.casefold()


def classify_transition(
    previous: Optional[Identity],
    current: Identity,
    expected_country: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Optional[IdentityChangeEvent]:
    """
    Compare two observations. At most one event is produced, by priority
    country > address > ISP. Returns None when nothing changed.
    """
    timestamp = timestamp or utcnow()

    if previous is None:
        change, expected = ChangeType.INITIAL, True
    elif not _same_country(previous, current):
        change, expected = ChangeType.COUNTRY_CHANGED, matches_country(current, expected_country)
    elif previous.address != current.address:
        change, expected = ChangeType.IP_CHANGED, matches_country(current, expected_country)
    elif (previous.isp or "") != (current.isp or ""):
        change, expected = ChangeType.ISP_CHANGED, matches_country(current, expected_country)
    else:
        return None

    return IdentityChangeEvent(
        change_type=change,
        previous=previous,
        current=current,
        timestamp=timestamp,
        is_expected=expected,
    )


def is_alerting(event: IdentityChangeEvent, alert_on: Iterable[ChangeType]) -> bool:
    return event.change_type in set(alert_on) and not event.is_expected


class NetworkIdentityMonitor:
    """
    Two states: Unknown (no identity yet) and Established.

    ``on_event(event, alerting)`` is called for every change. Alerting events
    also set ``pending_alert`` until ``acknowledge()`` is called.
    """

    def __init__(
        self,
        resolver,
        on_event: Callable[[IdentityChangeEvent, bool], None],
        settings: Callable[[], VpnSettings],
    ):
        self.resolver = resolver
        self.on_event = on_event
        self.settings = settings

        self.current: Optional[Identity] = None
        self.last_event: Optional[IdentityChangeEvent] = None
        self.pending_alert: Optional[IdentityChangeEvent] = None

        self._task: Optional[asyncio.Future] = None
        self._wake_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def state(self) -> str:
        return "established" if self.current is not None else "unknown"

    async def check_once(self) -> Optional[IdentityChangeEvent]:
        """Resolve and compare once. Resolution failures skip the cycle."""
        vpn = self.settings()
        try:
            identity = await self.resolver.resolve()
        except ResolutionError as e:
            logger.warning(f"Identity resolution failed, keeping previous state: {e}")
            return None

        event = classify_transition(self.current, identity, vpn.expected_country)
        self.current = identity
        if event is None:
            return None

        self.last_event = event
        alerting = is_alerting(event, vpn.alert_on)
        if alerting:
            self.pending_alert = event

        log = logger.warning if alerting else logger.info
        log(
            f"Network identity {event.change_type.value}: "
            f"{event.previous.address if event.previous else '-'} → {identity.address} "
            f"({identity.country_code or identity.country}, {identity.isp or 'unknown ISP'})"
            + ("" if event.is_expected else " [unexpected]")
        )
        self.on_event(event, alerting)
        return event

    def acknowledge(self) -> Optional[IdentityChangeEvent]:
        """Clear the pending alert. The stored identity is left alone."""
        event, self.pending_alert = self.pending_alert, None
        return event

    def reset(self):
        """Forget the previous identity, back to Unknown."""
        self.current = None
        self.pending_alert = None

    # ──────────────────────────────────────────────────────────────────
    # Periodic loop
    # ──────────────────────────────────────────────────────────────────

    def start(self):
        if self._running:
            return
        self._running = True
        self._wake_event = asyncio.Event()
        self._task = asyncio.ensure_future(self._run())

    def wake(self):
        """Re-read settings now instead of at the end of the current wait."""
        if self._wake_event is not None:
            self._wake_event.set()

    async def stop(self):
        if not self._running:
            return
        self._running = False
        self.wake()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=getattr(self.resolver, "timeout", 5.0) + 1.0)
            except asyncio.TimeoutError:
                logger.warning("Identity check still running at shutdown, cancelled")
            except Exception:
                logger.exception("Identity loop had failed")
            self._task = None
        close = getattr(self.resolver, "close", None)
        if close is not None:
            await close()

    async def _run(self):
        while self._running:
            vpn = self.settings()
            if vpn.enabled:
                try:
                    await self.check_once()
                except Exception:
                    logger.exception("Identity check failed")
            elif self.current is not None:
                logger.info("VPN protection disabled, identity state reset")
                self.reset()

            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=max(5, vpn.check_interval))
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

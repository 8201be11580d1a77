"""
Settings Manager
JSON-backed settings with defaults and validation.

The settings live inside the same state document as the history snapshot;
``Settings`` only owns the dict, ``StateStorage`` does the file I/O.
"""

import copy
import ipaddress
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.parse import urlparse

from loguru import logger

from .errors import ConfigError
from .models import ChangeType, SiteMonitor

MAX_SITE_MONITORS = 10
DISPLAY_MODES = ("icon_only", "icon_and_ping", "ping_only")

_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9_]([A-Za-z0-9_-]{0,62})(\.[A-Za-z0-9_-]{1,63})*\.?$")


@dataclass(frozen=True)
class VpnSettings:
    """VPN-protection policy for the identity monitor."""
    enabled: bool = False
    check_interval: int = 30
    alert_on: FrozenSet[ChangeType] = field(default_factory=lambda: frozenset({ChangeType.COUNTRY_CHANGED}))
    expected_country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "check_interval": self.check_interval,
            "alert_on": sorted(c.value for c in self.alert_on),
            "expected_country": self.expected_country,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VpnSettings":
        """Build and validate; raises ConfigError on bad input."""
        if not isinstance(data, dict):
            raise ConfigError("VPN settings must be an object")

        interval = data.get("check_interval", 30)
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) \
                or not math.isfinite(interval) or interval < 5:
            raise ConfigError(f"VPN check interval must be at least 5 seconds, got {interval!r}")

        names = data.get("alert_on", ["country_changed"])
        if names is None:
            names = []
        if not isinstance(names, (list, tuple, set, frozenset)):
            raise ConfigError("alert_on must be a list of change types")

        alert_on = set()
        for name in names:
            if isinstance(name, ChangeType):
                name = name.value
            try:
                alert_on.add(ChangeType(name))
            except ValueError:
                raise ConfigError(f"Unknown change type: {name!r}") from None

        pin = data.get("expected_country")
        if pin is not None:
            pin = str(pin).strip() or None

        return cls(
            enabled=bool(data.get("enabled", False)),
            check_interval=int(interval),
            alert_on=frozenset(alert_on),
            expected_country=pin,
        )


# ──────────────────────────────────────────────────────────────────────
# Validators
# ──────────────────────────────────────────────────────────────────────

def validate_target(target: str) -> str:
    """Normalize a ping target (IP or hostname) or raise ConfigError."""
    if not isinstance(target, str) or not target.strip():
        raise ConfigError("Target must be a non-empty hostname or IP address")
    target = target.strip()
    if "://" in target or "/" in target or any(c.isspace() for c in target):
        raise ConfigError(f"Target must be a bare hostname or IP address, got {target!r}")
    try:
        ipaddress.ip_address(target)
        return target
    except ValueError:
        pass
    if not _HOSTNAME_RE.match(target):
        raise ConfigError(f"Invalid hostname: {target!r}")
    return target.lower()


def validate_site_url(url: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ConfigError("Site URL must not be empty")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigError(f"Site URL must be an http(s) URL with a host, got {url!r}")
    return url


def validate_interval(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) \
            or not math.isfinite(value) or value < 1:
        raise ConfigError(f"{name} must be at least 1 second, got {value!r}")
    return value


def validate_threshold(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 1 <= value <= 10000:
        raise ConfigError(f"Threshold must be between 1 and 10000 ms, got {value!r}")
    return value


def validate_display_mode(mode: Any) -> str:
    if mode not in DISPLAY_MODES:
        raise ConfigError(f"Display mode must be one of {', '.join(DISPLAY_MODES)}, got {mode!r}")
    return mode


def _validate_rearm(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"alert_rearm_samples must be a positive integer, got {value!r}")
    return value


def _validate_flag(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"Expected true or false, got {value!r}")
    return value


class Settings:
    """Application settings with defaults."""

    DEFAULTS = {
        'targets': ['8.8.8.8'],
        'primary_target': '8.8.8.8',
        'ping_interval_visible': 2,
        'ping_interval_hidden': 10,
        'notification_threshold_ms': 400,
        'alert_rearm_samples': 1,
        'notifications_enabled': True,
        'display_mode': 'icon_and_ping',
        'site_monitors': [],
        'site_check_interval': 60,
        'vpn': VpnSettings().to_dict(),
    }

    _SCALAR_CHECKS = {
        'ping_interval_visible': lambda v: validate_interval(v, "ping_interval_visible"),
        'ping_interval_hidden': lambda v: validate_interval(v, "ping_interval_hidden"),
        'site_check_interval': lambda v: validate_interval(v, "site_check_interval"),
        'notification_threshold_ms': validate_threshold,
        'alert_rearm_samples': _validate_rearm,
        'display_mode': validate_display_mode,
        'notifications_enabled': _validate_flag,
    }

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data = copy.deepcopy(self.DEFAULTS)
        if data:
            self.load(data)

    def get(self, key: str, default: Any = None) -> Any:
        """Get setting value."""
        return self.data.get(key, default)

    def set(self, key: str, value: Any):
        """Set setting value."""
        self.data[key] = value

    def load(self, data: Dict[str, Any]):
        """
        Merge a stored document over the defaults. Values that fail
        validation fall back to their default instead of failing startup.
        """
        if not isinstance(data, dict):
            return
        merged = copy.deepcopy(self.DEFAULTS)
        merged.update(data)
        self.data = merged

        for key, check in self._SCALAR_CHECKS.items():
            try:
                check(self.data[key])
            except ConfigError as e:
                logger.warning(f"Stored setting {key} is invalid ({e}), using default")
                self.data[key] = self.DEFAULTS[key]

        try:
            targets = [validate_target(t) for t in self.data.get('targets') or []]
        except (ConfigError, TypeError):
            targets = []
        self.data['targets'] = list(dict.fromkeys(targets)) or list(self.DEFAULTS['targets'])
        if self.data.get('primary_target') not in self.data['targets']:
            self.data['primary_target'] = self.data['targets'][0]

        try:
            VpnSettings.from_dict(self.data.get('vpn') or {})
        except ConfigError:
            self.data['vpn'] = copy.deepcopy(self.DEFAULTS['vpn'])

        try:
            self._parse_site_monitors()
        except (ConfigError, KeyError, TypeError, AttributeError):
            self.data['site_monitors'] = []

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    # ──────────────────────────────────────────────────────────────────
    # Typed accessors
    # ──────────────────────────────────────────────────────────────────

    @property
    def vpn(self) -> VpnSettings:
        return VpnSettings.from_dict(self.data.get('vpn') or {})

    @property
    def site_monitors(self) -> List[SiteMonitor]:
        return self._parse_site_monitors()

    def _parse_site_monitors(self) -> List[SiteMonitor]:
        monitors = [SiteMonitor.from_dict(m) for m in self.data.get('site_monitors') or []]
        for monitor in monitors:
            validate_site_url(monitor.url)
        if len(monitors) > MAX_SITE_MONITORS:
            raise ConfigError(f"At most {MAX_SITE_MONITORS} site monitors are allowed")
        return monitors

    def ping_interval(self, visible: bool) -> float:
        key = 'ping_interval_visible' if visible else 'ping_interval_hidden'
        return self.data.get(key) or self.DEFAULTS[key]

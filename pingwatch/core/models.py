"""
Shared data models for the monitoring engine.
All dataclasses are frozen so samples and snapshots can be handed to
readers without copying.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str) -> datetime:
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be an ISO string, got {type(value).__name__}")
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ProbeMethod(Enum):
    """Measurement method that produced a latency value."""
    ICMP = "icmp"
    TCP_DNS = "tcp_dns"
    TCP_HTTPS = "tcp_https"
    TCP_HTTP = "tcp_http"

    @property
    def port(self) -> Optional[int]:
        return _METHOD_PORTS.get(self)

    @property
    def is_tcp(self) -> bool:
        return self is not ProbeMethod.ICMP


_METHOD_PORTS = {
    ProbeMethod.TCP_DNS: 53,
    ProbeMethod.TCP_HTTPS: 443,
    ProbeMethod.TCP_HTTP: 80,
}


# ──────────────────────────────────────────────────────────────────────
# Probe outcomes
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProbeSuccess:
    method: ProbeMethod
    latency_ms: float


@dataclass(frozen=True)
class ProbeTimeout:
    method: ProbeMethod


@dataclass(frozen=True)
class ProbeUnreachable:
    method: ProbeMethod
    reason: str = ""


# ──────────────────────────────────────────────────────────────────────
# Ping samples
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Sample:
    """One latency measurement. ``latency_ms is None`` means the probe failed."""
    timestamp: datetime
    target: str
    latency_ms: Optional[float] = None
    method: Optional[ProbeMethod] = None

    def __post_init__(self):
        if self.latency_ms is None and self.method is not None:
            raise ValueError("a failed sample cannot carry a probe method")

    @property
    def is_success(self) -> bool:
        return self.latency_ms is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _ts(self.timestamp),
            "target": self.target,
            "latency_ms": self.latency_ms,
            "method": self.method.value if self.method else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sample":
        if not isinstance(data, dict):
            raise TypeError(f"sample must be an object, got {type(data).__name__}")
        latency = data.get("latency_ms")
        method = data.get("method")
        return cls(
            timestamp=_parse_ts(data["timestamp"]),
            target=str(data["target"]),
            latency_ms=float(latency) if latency is not None else None,
            method=ProbeMethod(method) if (method and latency is not None) else None,
        )


@dataclass(frozen=True)
class PingStatistics:
    """Summary over a history window. Latency fields are None without successes."""
    min_ms: Optional[float]
    max_ms: Optional[float]
    avg_ms: Optional[float]
    packet_loss_pct: float
    total_pings: int
    failed_pings: int

    @property
    def successful_pings(self) -> int:
        return self.total_pings - self.failed_pings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "avg_ms": self.avg_ms,
            "packet_loss_pct": self.packet_loss_pct,
            "total_pings": self.total_pings,
            "failed_pings": self.failed_pings,
        }


# ──────────────────────────────────────────────────────────────────────
# Network identity
# ──────────────────────────────────────────────────────────────────────

class ChangeType(Enum):
    INITIAL = "initial"
    IP_CHANGED = "ip_changed"
    COUNTRY_CHANGED = "country_changed"
    ISP_CHANGED = "isp_changed"


@dataclass(frozen=True)
class Identity:
    """Public address and geolocation of this machine."""
    address: str
    country: str
    country_code: str
    city: Optional[str] = None
    isp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
            "isp": self.isp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            address=str(data["address"]),
            country=str(data.get("country") or ""),
            country_code=str(data.get("country_code") or ""),
            city=data.get("city"),
            isp=data.get("isp"),
        )


@dataclass(frozen=True)
class IdentityChangeEvent:
    change_type: ChangeType
    current: Identity
    timestamp: datetime
    is_expected: bool
    previous: Optional[Identity] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "previous": self.previous.to_dict() if self.previous else None,
            "current": self.current.to_dict(),
            "timestamp": _ts(self.timestamp),
            "is_expected": self.is_expected,
        }


# ──────────────────────────────────────────────────────────────────────
# Site uptime
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SiteMonitor:
    url: str
    display_name: Optional[str] = None
    enabled: bool = True

    @property
    def label(self) -> str:
        return self.display_name or self.url

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "display_name": self.display_name, "enabled": self.enabled}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SiteMonitor":
        return cls(
            url=str(data["url"]),
            display_name=data.get("display_name"),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(frozen=True)
class SiteStatus:
    url: str
    is_up: bool
    last_check: datetime
    latency_ms: Optional[float] = None
    last_down: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "is_up": self.is_up,
            "latency_ms": self.latency_ms,
            "last_check": _ts(self.last_check),
            "last_down": _ts(self.last_down),
        }

from .engine import NetworkEngine
from .settings import Settings, VpnSettings
from .statistics import Statistics, compute_statistics
from .prober import PingProber
from .history import HistoryStore
from .scheduler import PingScheduler, ThresholdAlert
from .identity import NetworkIdentityMonitor, IpApiResolver, classify_transition
from .sites import SiteUptimeProber
from .storage import StateStorage
from .events import EventSink, CallbackEventSink, Notifier, LogNotifier
from .errors import ConfigError, ResolutionError
from .models import (
    ProbeMethod, Sample, PingStatistics, Identity, ChangeType,
    IdentityChangeEvent, SiteMonitor, SiteStatus,
)

__all__ = [
    'NetworkEngine',
    'Settings',
    'VpnSettings',
    'Statistics',
    'compute_statistics',
    'PingProber',
    'HistoryStore',
    'PingScheduler',
    'ThresholdAlert',
    'NetworkIdentityMonitor',
    'IpApiResolver',
    'classify_transition',
    'SiteUptimeProber',
    'StateStorage',
    'EventSink',
    'CallbackEventSink',
    'Notifier',
    'LogNotifier',
    'ConfigError',
    'ResolutionError',
    'ProbeMethod',
    'Sample',
    'PingStatistics',
    'Identity',
    'ChangeType',
    'IdentityChangeEvent',
    'SiteMonitor',
    'SiteStatus',
]

"""
Outbound interfaces: live event streams and OS notifications.
"""

from typing import Any, Callable, Dict, Mapping

from loguru import logger

from .models import IdentityChangeEvent, Sample, SiteStatus

PING_UPDATE = "ping-update"
SITE_STATUS_UPDATE = "site-status-update"
NETWORK_CHANGE = "network-change"


class EventSink:
    """Receives live updates from the engine. The base class drops them."""

    def ping_update(self, target: str, sample: Sample):
        pass

    def site_status_update(self, statuses: Mapping[str, SiteStatus]):
        pass

    def network_change(self, event: IdentityChangeEvent):
        pass


class CallbackEventSink(EventSink):
    """Serializes every event and hands it to ``callback(stream, payload)``."""

    def __init__(self, callback: Callable[[str, Any], None]):
        self.callback = callback

    def ping_update(self, target: str, sample: Sample):
        self.callback(PING_UPDATE, sample.to_dict())

    def site_status_update(self, statuses: Mapping[str, SiteStatus]):
        payload: Dict[str, Any] = {url: s.to_dict() for url, s in statuses.items()}
        self.callback(SITE_STATUS_UPDATE, payload)

    def network_change(self, event: IdentityChangeEvent):
        self.callback(NETWORK_CHANGE, event.to_dict())


class Notifier:
    """Fire-and-forget OS notification delivery."""

    def notify(self, title: str, message: str):
        raise NotImplementedError


class LogNotifier(Notifier):
    """Fallback used when no desktop notifier is available."""

    def notify(self, title: str, message: str):
        logger.info(f"[notification] {title}: {message}")

"""
Qt adapters for the engine's outbound interfaces.
"""

from PyQt6.QtCore import QObject, pyqtSignal
from PyQt6.QtWidgets import QSystemTrayIcon

from pingwatch.core.events import EventSink, Notifier


class QtEventSink(QObject, EventSink):
    """Re-emits engine events as Qt signals."""

    ping_updated = pyqtSignal(str, object)      # target, Sample
    sites_updated = pyqtSignal(object)          # Dict[str, SiteStatus]
    network_changed = pyqtSignal(object)        # IdentityChangeEvent

    def ping_update(self, target, sample):
        self.ping_updated.emit(target, sample)

    def site_status_update(self, statuses):
        self.sites_updated.emit(statuses)

    def network_change(self, event):
        self.network_changed.emit(event)


class TrayNotifier(Notifier):
    """Delivers notifications as tray balloon messages."""

    def __init__(self, tray_icon: QSystemTrayIcon, duration_ms: int = 5000):
        self.tray_icon = tray_icon
        self.duration_ms = duration_ms

    def notify(self, title: str, message: str):
        self.tray_icon.showMessage(
            title,
            message,
            QSystemTrayIcon.MessageIcon.Warning,
            self.duration_ms,
        )

"""
Status Window - compact readout of the primary target, sites and VPN state.
"""

from PyQt6.QtCore import Qt, QTimer, pyqtSignal
from PyQt6.QtGui import QFont
from PyQt6.QtWidgets import QDialog, QLabel, QVBoxLayout, QComboBox

from pingwatch.ui.display import ping_color, ping_status


class StatusWindow(QDialog):
    """Shows live data pulled from a NetworkEngine."""

    visibility_changed = pyqtSignal(bool)

    STATS_PERIODS = [("1 min", 1), ("5 min", 5), ("15 min", 15), ("1 hour", 60), ("24 hours", 1440)]

    def __init__(self, engine, parent=None):
        super().__init__(parent)
        self.engine = engine
        self.setWindowTitle("PingWatch")
        self.setWindowFlags(Qt.WindowType.Tool | Qt.WindowType.WindowStaysOnTopHint)
        self.setMinimumWidth(280)

        layout = QVBoxLayout(self)

        self.target_label = QLabel()
        self.ping_label = QLabel("---")
        font = QFont()
        font.setPointSize(28)
        font.setBold(True)
        self.ping_label.setFont(font)
        self.status_label = QLabel()

        self.period_box = QComboBox()
        for label, minutes in self.STATS_PERIODS:
            self.period_box.addItem(label, minutes)
        self.period_box.setCurrentIndex(1)
        self.period_box.currentIndexChanged.connect(self.refresh_statistics)

        self.stats_label = QLabel()
        self.sites_label = QLabel()
        self.vpn_label = QLabel()
        for label in (self.stats_label, self.sites_label, self.vpn_label):
            label.setWordWrap(True)

        for widget in (self.target_label, self.ping_label, self.status_label,
                       self.period_box, self.stats_label, self.sites_label, self.vpn_label):
            layout.addWidget(widget)

        # statistics are pulled, not pushed
        self.stats_timer = QTimer(self)
        self.stats_timer.timeout.connect(self.refresh_statistics)

    # ──────────────────────────────────────────────────────────────────
    # Updates
    # ──────────────────────────────────────────────────────────────────

    def update_ping(self, target, sample):
        if target != self.engine.get_primary_target():
            return
        color = ping_color(sample.latency_ms)
        text = f"{sample.latency_ms:.0f} ms" if sample.latency_ms is not None else "---"
        self.target_label.setText(target)
        self.ping_label.setText(text)
        self.ping_label.setStyleSheet(f"color: {color};")
        method = sample.method.value if sample.method else "-"
        self.status_label.setText(f"{ping_status(sample.latency_ms)} · via {method}")

    def refresh_statistics(self):
        target = self.engine.get_primary_target()
        stats = self.engine.get_statistics(target, self.period_box.currentData())
        if stats.avg_ms is None:
            latency = "no replies"
        else:
            latency = f"min {stats.min_ms:.0f} / avg {stats.avg_ms:.0f} / max {stats.max_ms:.0f} ms"
        self.stats_label.setText(
            f"{latency}\nloss {stats.packet_loss_pct:.1f}% "
            f"({stats.failed_pings}/{stats.total_pings})"
        )

    def update_sites(self, statuses):
        lines = []
        for monitor in self.engine.get_site_monitors():
            status = statuses.get(monitor.url)
            if status is None:
                lines.append(f"…  {monitor.label}")
                continue
            mark = "▲" if status.is_up else "▼"
            suffix = f"  last down {status.last_down:%H:%M}" if status.last_down else ""
            lines.append(f"{mark}  {monitor.label}{suffix}")
        self.sites_label.setText("\n".join(lines) or "No sites monitored")

    def update_identity(self):
        vpn = self.engine.get_vpn_settings()
        identity = self.engine.current_identity
        if not vpn.enabled:
            self.vpn_label.setText("VPN protection off")
        elif identity is None:
            self.vpn_label.setText("VPN protection: resolving…")
        else:
            alert = "  ⚠ unexpected change" if self.engine.pending_identity_alert else ""
            self.vpn_label.setText(f"{identity.address} · {identity.country_code}{alert}")

    # ──────────────────────────────────────────────────────────────────
    # Visibility
    # ──────────────────────────────────────────────────────────────────

    def showEvent(self, a0):
        super().showEvent(a0)
        self.refresh_statistics()
        self.update_sites(self.engine.get_site_statuses())
        self.update_identity()
        self.stats_timer.start(5000)
        self.visibility_changed.emit(True)

    def hideEvent(self, a0):
        super().hideEvent(a0)
        self.stats_timer.stop()
        self.visibility_changed.emit(False)

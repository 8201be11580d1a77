"""
System Tray Application - hosts the network engine on the Qt event loop.

The tray icon shows the primary target's latency, the status window is the
only "foreground" surface: while it is open the engine pings on its faster
interval.
"""

import asyncio
from pathlib import Path

from PyQt6.QtCore import Qt, QRect
from PyQt6.QtGui import QAction, QActionGroup, QBrush, QColor, QFont, QIcon, QPainter, QPen, QPixmap
from PyQt6.QtWidgets import QApplication, QMenu, QSystemTrayIcon, QWidget
from loguru import logger

from pingwatch.core.engine import NetworkEngine
from pingwatch.core.errors import ConfigError
from pingwatch.core.storage import StateStorage
from pingwatch.ui.bridge import QtEventSink, TrayNotifier
from pingwatch.ui.display import ping_color, tray_label
from pingwatch.ui.status_window import StatusWindow


def create_tray_icon(color: str, text: str = "", size: int = 64, badge: bool = True) -> QIcon:
    """Coloured circle with optional text, or just coloured text when ``badge`` is off."""
    pixmap = QPixmap(size, size)
    pixmap.fill(Qt.GlobalColor.transparent)
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.RenderHint.Antialiasing)
    if badge:
        painter.setBrush(QBrush(QColor(color)))
        painter.setPen(QPen(QColor(255, 255, 255), 2))
        margin = 6
        painter.drawEllipse(margin, margin, size - 2 * margin, size - 2 * margin)
    if text:
        font = QFont()
        font.setBold(True)
        font.setPixelSize(size // 3 if len(text) > 2 else size // 2)
        painter.setFont(font)
        painter.setPen(QColor(255, 255, 255) if badge else QColor(color))
        painter.drawText(QRect(0, 0, size, size), Qt.AlignmentFlag.AlignCenter, text)
    painter.end()
    return QIcon(pixmap)


class TrayApplication(QWidget):
    """Tray icon, menu and status window on top of a NetworkEngine."""

    def __init__(self, data_dir: Path = None):
        super().__init__()
        logger.info("=== Initializing TrayApplication ===")

        self.tray_icon = QSystemTrayIcon(self)
        self.tray_icon.setIcon(create_tray_icon(ping_color(None)))
        self.tray_icon.setToolTip("PingWatch\nStarting...")

        self.sink = QtEventSink()
        self.engine = NetworkEngine(
            storage=StateStorage(data_dir),
            sink=self.sink,
            notifier=TrayNotifier(self.tray_icon),
        )
        self.engine.load()

        self.window = StatusWindow(self.engine)
        self.window.visibility_changed.connect(self.engine.set_window_visible)

        self.sink.ping_updated.connect(self._on_ping)
        self.sink.ping_updated.connect(self.window.update_ping)
        self.sink.sites_updated.connect(self.window.update_sites)
        self.sink.network_changed.connect(lambda _event: self.window.update_identity())

        self._create_menu()
        self.tray_icon.activated.connect(self._on_tray_clicked)
        self.tray_icon.show()

        logger.info("=== TrayApplication initialized ===")

    def start(self):
        """Start monitoring. Call once the asyncio loop is running."""
        self.engine.start()

    # ──────────────────────────────────────────────────────────────────
    # Menu
    # ──────────────────────────────────────────────────────────────────

    def _create_menu(self):
        menu = QMenu()

        toggle_action = QAction("Show/Hide", self)
        toggle_action.triggered.connect(self._toggle_window)
        menu.addAction(toggle_action)
        menu.addSeparator()

        self.targets_menu = menu.addMenu("Primary target")
        self.targets_menu.aboutToShow.connect(self._fill_targets_menu)

        self.vpn_action = QAction("VPN protection", self)
        self.vpn_action.setCheckable(True)
        self.vpn_action.setChecked(self.engine.get_vpn_settings().enabled)
        self.vpn_action.triggered.connect(self._toggle_vpn)
        menu.addAction(self.vpn_action)

        ack_action = QAction("Acknowledge network change", self)
        ack_action.triggered.connect(self._acknowledge)
        menu.addAction(ack_action)
        menu.addSeparator()

        self.notif_action = QAction("Notifications", self)
        self.notif_action.setCheckable(True)
        self.notif_action.setChecked(self.engine.settings.get('notifications_enabled', True))
        self.notif_action.triggered.connect(self.engine.set_notifications_enabled)
        menu.addAction(self.notif_action)
        menu.addSeparator()

        exit_action = QAction("Quit PingWatch", self)
        exit_action.triggered.connect(self._exit)
        menu.addAction(exit_action)

        self.tray_icon.setContextMenu(menu)

    def _fill_targets_menu(self):
        self.targets_menu.clear()
        group = QActionGroup(self.targets_menu)
        primary = self.engine.get_primary_target()
        for target in self.engine.get_targets():
            action = QAction(target, self.targets_menu)
            action.setCheckable(True)
            action.setChecked(target == primary)
            action.triggered.connect(lambda checked, t=target: self._select_target(t))
            group.addAction(action)
            self.targets_menu.addAction(action)

    def _select_target(self, target: str):
        try:
            self.engine.set_primary_target(target)
        except ConfigError as e:
            logger.warning(f"Cannot select {target}: {e}")
            return
        self.window.refresh_statistics()

    def _toggle_vpn(self, checked: bool):
        self.engine.set_vpn_settings({"enabled": checked})
        self.window.update_identity()

    def _acknowledge(self):
        event = self.engine.acknowledge_ip_change()
        if event is not None:
            logger.info(f"Acknowledged {event.change_type.value}")
        self.window.update_identity()

    # ──────────────────────────────────────────────────────────────────
    # Tray interactions
    # ──────────────────────────────────────────────────────────────────

    def _on_tray_clicked(self, reason):
        if reason == QSystemTrayIcon.ActivationReason.Trigger:
            self._toggle_window()

    def _toggle_window(self):
        if self.window.isVisible():
            self.window.hide()
        else:
            self.window.show()
            self.window.raise_()
            self.window.activateWindow()

    def _on_ping(self, target, sample):
        if target != self.engine.get_primary_target():
            return
        ms = sample.latency_ms
        text = f"{ms:.0f}" if ms is not None else "---"

        label = tray_label(ms, self.engine.settings.get('display_mode', 'icon_and_ping'))
        self.tray_icon.setIcon(create_tray_icon(label.color, label.text, badge=label.badge))
        self.tray_icon.setToolTip(f"PingWatch - {target}\n{text} ms")

    # ──────────────────────────────────────────────────────────────────
    # Cleanup
    # ──────────────────────────────────────────────────────────────────

    def _exit(self):
        logger.info("Exiting")
        self.window.hide()
        self.tray_icon.hide()
        asyncio.ensure_future(self._shutdown())

    async def _shutdown(self):
        try:
            await self.engine.shutdown()
        finally:
            QApplication.quit()

"""
Latency presentation rules shared by the tray icon and the status window.
No Qt imports here.
"""

from typing import NamedTuple, Optional


def ping_color(latency_ms) -> str:
    if latency_ms is None:
        return "#888888"
    if latency_ms < 50:
        return "#22c55e"
    if latency_ms < 150:
        return "#eab308"
    return "#ef4444"


def ping_status(latency_ms) -> str:
    if latency_ms is None:
        return "Timeout"
    if latency_ms < 50:
        return "Excellent"
    if latency_ms < 150:
        return "Good"
    return "Poor"


class TrayLabel(NamedTuple):
    text: str
    badge: bool     # draw the coloured circle behind the text
    color: str


def tray_label(latency_ms: Optional[float], mode: str) -> TrayLabel:
    """What the tray icon shows for a latency under a display mode."""
    color = ping_color(latency_ms)
    if mode == "icon_only":
        return TrayLabel("", True, color)

    if latency_ms is None:
        text = "---"
    elif latency_ms < 1000:
        text = f"{latency_ms:.0f}"
    else:
        text = "1k+"
    return TrayLabel(text, mode != "ping_only", color)

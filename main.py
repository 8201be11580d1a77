#!/usr/bin/env python3
"""
PingWatch - continuous network-health monitor in the system tray.

Pings a set of targets, watches site uptime and the public network identity,
and keeps a rolling 24 hour history in ``<data-dir>/state.json``.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from PyQt6.QtWidgets import QApplication

from pingwatch.ui.tray_app import TrayApplication
from pingwatch.utils.logger import setup_logger

VERSION = "1.0.0"


def parse_args(argv):
    parser = argparse.ArgumentParser(prog="pingwatch", description="Network health monitor")
    parser.add_argument("--data-dir", type=Path, default=Path("data"),
                        help="directory holding state.json and logs (default: ./data)")
    parser.add_argument("--debug", action="store_true", help="log DEBUG to the console")
    # Qt gets whatever we do not recognise
    return parser.parse_known_args(argv)


def main(argv=None):
    """Main entry point."""
    args, qt_args = parse_args(sys.argv[1:] if argv is None else argv)

    logger = setup_logger(args.data_dir / "logs", console_level="DEBUG" if args.debug else "INFO")
    logger.info(f"PingWatch {VERSION} starting (data in {args.data_dir.resolve()})")

    try:
        app = QApplication([sys.argv[0], *qt_args])
        app.setApplicationName("PingWatch")
        app.setOrganizationName("PingWatch")
        app.setApplicationVersion(VERSION)
        app.setQuitOnLastWindowClosed(False)

        # asyncio runs on top of the Qt event loop
        import qasync
        loop = qasync.QEventLoop(app)
        asyncio.set_event_loop(loop)

        tray_app = TrayApplication(data_dir=args.data_dir)

        with loop:
            loop.call_soon(tray_app.start)
            return loop.run_forever()

    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    finally:
        logger.info("PingWatch stopped")


if __name__ == "__main__":
    sys.exit(main())

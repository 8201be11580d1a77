"""
Logging setup (loguru).
"""

import sys
from pathlib import Path
from loguru import logger

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logger(log_dir: Path = None, console_level: str = "INFO"):
    """Console sink at ``console_level`` plus a daily DEBUG file under ``log_dir``."""
    logger.remove()

    log_dir = Path(log_dir) if log_dir is not None else Path("data") / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    # stderr is None in windowed (pythonw / frozen) builds
    if sys.stderr is not None:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=console_level, colorize=True)

    log_file = log_dir / "pingwatch_{time:YYYY-MM-DD}.log"
    logger.add(
        log_file,
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="5 MB",
        retention="7 days",
        encoding="utf-8",
    )
    logger.debug(f"Logging to {log_dir}")

    return logger

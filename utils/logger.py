"""
Logger Configuration
Shared logging setup
"""
import logging
import sys
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler
from rich.console import Console


console = Console()

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"

LOG_DIR = Path(__file__).parent.parent / "logs"


def setup_logger(
    name: str = "relay",
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    use_rich: bool = True,
) -> logging.Logger:
    """
    Configure a named logger.

    Args:
        name: logger name
        level: log level
        log_file: optional file name under ``logs/``
        use_rich: render console output through Rich

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # handlers are attached once per logger
    if logger.handlers:
        return logger

    if use_rich:
        console_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT_SIMPLE))
    else:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(LOG_DIR / log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    return logger


RELAY_LOGGERS = ("orchestrator", "pipeline", "storage", "webapp")


def setup_relay_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Attach handlers to every relay package logger."""
    for name in RELAY_LOGGERS:
        setup_logger(name, level=level, log_file=log_file)

"""Logger setup: rich console output plus an optional log file."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

from server_setup.ui import console, print_warning

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_DIR = "/var/log"


def log_path(filename: str) -> Path:
    """Resolve a log file name against SERVER_SETUP_LOG_DIR (default /var/log)."""
    return Path(os.environ.get("SERVER_SETUP_LOG_DIR", DEFAULT_LOG_DIR)) / filename


def setup_logger(
    log_file: Optional[Union[str, Path]] = None,
    name: str = "server_setup",
    level: int = logging.INFO,
) -> logging.Logger:
    """Set up and configure the logger."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)

    # Rich console handler
    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file is None:
        return logger

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        print_warning(f"Cannot write to log file {log_file} ({e}). Logging to file disabled.")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(file_handler)

    try:
        # Secure the log file
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    return logger

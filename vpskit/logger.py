"""Logger setup: rich console handler plus a DEBUG file handler."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

from vpskit import LOGGER_NAME
from vpskit.ui import console


def setup_logger(
    log_file: Optional[Union[str, Path]] = None, verbose: bool = False
) -> logging.Logger:
    """Set up and configure the vpskit logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(
        console=console, rich_tracebacks=True, show_path=False
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(console_handler)

    if log_file is None:
        return logger

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    try:
        # Secure the log file
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    return logger

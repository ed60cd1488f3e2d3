"""Logger setup: Rich console handler plus a private log file."""

import datetime
import gzip
import logging
import os
import shutil
from pathlib import Path
from typing import Union

from rich.logging import RichHandler

from webhost_provision.ui import console

LOGGER_NAME = "webhost_provision"
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB


def rotate_log(log_file: Path) -> bool:
    """Compress an oversized log to ``<log>.<ts>.gz`` and truncate it."""
    if not log_file.is_file() or log_file.stat().st_size <= MAX_LOG_SIZE:
        return False
    ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    rotated = f"{log_file}.{ts}.gz"
    with open(log_file, "rb") as fin, gzip.open(rotated, "wb") as fout:
        shutil.copyfileobj(fin, fout)
    open(log_file, "w").close()
    return True


def setup_logger(log_file: Union[str, Path], verbose: bool = False) -> logging.Logger:
    """Set up and configure the package logger."""
    log_file = Path(log_file)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)

    console_handler = RichHandler(
        console=console, rich_tracebacks=True, markup=False, show_path=verbose
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(console_handler)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        rotate_log(log_file)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Logging to console only, cannot open {log_file}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
        )
    )
    logger.addHandler(file_handler)

    try:
        # Secure the log file
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    logger.debug(f"Logging initialized: {log_file}")
    return logger

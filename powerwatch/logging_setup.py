"""
Daily logs via TimedRotatingFileHandler (midnight).
Log: client transitions and emitted events, storage failures, service start/stop.
Individual heartbeats go to the file at DEBUG only.
"""
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

from powerwatch.config import get_config_dir

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(log_path: Optional[str] = None) -> logging.Logger:
    """
    Configure root logger with daily rotating file and console.
    Returns the service logger ('powerwatch').
    """
    if log_path:
        log_dir = Path(log_path)
    else:
        log_dir = get_config_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "powerwatch.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    fh = TimedRotatingFileHandler(log_file, when="midnight", backupCount=30, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    # aiohttp logs every request at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    logger = logging.getLogger("powerwatch")
    logger.setLevel(logging.DEBUG)
    return logger

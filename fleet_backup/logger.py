import logging
import logging.handlers
import os
import sys
from typing import Optional

DATA_DIR = os.environ.get("FLEET_BACKUP_DATA_DIR", "data")
LOG_FILE_PATH = os.path.join(DATA_DIR, "fleet_backup.log")
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = LOG_FILE_PATH):
    """
    Logs to stdout and, unless ``log_file`` is None, to a size-rotated file.
    ``level`` defaults to the LOG_LEVEL environment variable, then INFO.
    """
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_file:
        try:
            root.addHandler(_rotating_handler(log_file, formatter))
        except OSError as e:
            root.error(f"Could not log to {log_file}, logging to stdout only: {e}")

    # One INFO line per job submission otherwise
    logging.getLogger("apscheduler").setLevel(max(logging.WARNING, root.level))
    logging.getLogger("fleet_backup").setLevel(log_level)
    root.info(f"Logging configured with level {log_level}")


def _rotating_handler(log_file: str, formatter: logging.Formatter) -> logging.Handler:
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
    )
    handler.setFormatter(formatter)
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

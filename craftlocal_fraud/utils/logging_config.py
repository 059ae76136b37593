"""
Logging setup for craftlocal-fraud.

One application logger ("craftlocal_fraud") owns the handlers; every module
logs through a child of it (get_logger(__name__)).

- Rotating daily file: WARNING and above, which is where analyzer failures
  and fallback assessments end up
- Console: CRITICAL only, unless the CLI asks for more with --verbose
"""
import logging
import logging.handlers
from pathlib import Path
from datetime import datetime

APP_LOGGER_NAME = "craftlocal_fraud"

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

LOG_MAX_BYTES = 5 * 1024 * 1024  # 5MB
LOG_BACKUP_COUNT = 3


def _file_handler(log_path: Path, app_name: str) -> logging.Handler:
    log_file = log_path / f"{app_name}_{datetime.now().strftime('%Y%m%d')}.log"
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
    )
    handler.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def setup_logging(
    log_dir: "str | Path | None" = None,
    app_name: str = APP_LOGGER_NAME,
    console_level: int = logging.CRITICAL,
) -> logging.Logger:
    """
    Attach the file and console handlers to the application logger.

    Calling it again returns the already configured logger untouched.

    Args:
        log_dir: Directory for log files (created if missing). None means
                 the logs/ directory resolved by utils.paths.
        app_name: Logger name, also used as the log file prefix
        console_level: Level for the console handler
    """
    if log_dir is None:
        from .paths import get_logs_dir  # noqa: PLC0415
        log_path = get_logs_dir()
    else:
        log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(app_name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.addHandler(_file_handler(log_path, app_name))
    logger.addHandler(_console_handler(console_level))
    return logger


def get_logger(name: str = APP_LOGGER_NAME) -> logging.Logger:
    """Module logger; pass __name__ so records reach the application handlers."""
    return logging.getLogger(name)

"""
PMS Inventory Logging Configuration
Console and rotating file logs for the package logger tree
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional
from .config import settings

ROOT_LOGGER_NAME = "pms_inventory"

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(module)s.%(funcName)s:%(lineno)d %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MB = 1024 * 1024


def _rotating_handler(path: Path, max_mb: int, backups: int,
                      formatter: logging.Formatter, level: int = logging.NOTSET) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_mb * MB, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_level: Optional[str] = None,
    log_to_file: Optional[bool] = None,
    log_to_console: bool = True
) -> logging.Logger:
    """
    Configure the ``pms_inventory`` logger tree

    Args:
        log_level: Logging level name, defaults to settings.LOG_LEVEL
        log_to_file: Write app.log, error.log and inventory.log under
            settings.LOG_DIR (defaults to settings.LOG_TO_FILE)
        log_to_console: Also log to stdout

    Returns:
        The package root logger
    """
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    if log_to_file is None:
        log_to_file = settings.LOG_TO_FILE

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.handlers.clear()

    file_formatter = logging.Formatter(FILE_FORMAT, DATE_FORMAT)

    if log_to_console:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(level)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
        root.addHandler(console)

    services = logging.getLogger(f"{ROOT_LOGGER_NAME}.services")
    services.setLevel(level)
    services.handlers.clear()

    if log_to_file:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(exist_ok=True, parents=True)

        root.addHandler(_rotating_handler(log_dir / settings.LOG_FILE, 10, 5, file_formatter, level))
        root.addHandler(_rotating_handler(log_dir / settings.ERROR_LOG_FILE, 5, 3, file_formatter,
                                          logging.ERROR))
        # Stock mutations get their own longer-retained file; records still reach app.log
        services.addHandler(_rotating_handler(log_dir / settings.INVENTORY_LOG_FILE, 10, 10,
                                              file_formatter))

    return root


def get_logger(name: str) -> logging.Logger:
    """Logger under the package namespace"""
    if name.startswith(ROOT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


__all__ = [
    'setup_logging',
    'get_logger',
]

# data_gateway/utils/logger.py
import logging
import sys
from logging.handlers import RotatingFileHandler

from data_gateway.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(process)d - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("httpx", "httpcore")


def _attach(app_logger: logging.Logger, handler: logging.Handler) -> None:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    app_logger.addHandler(handler)


def setup_logging() -> logging.Logger:
    """
    Configures the gateway logger, shared by every module through
    logging.getLogger(settings.APP_NAME). Safe to call more than once.
    """
    level_name = settings.LOG_LEVEL.upper()
    app_logger = logging.getLogger(settings.APP_NAME)
    app_logger.setLevel(getattr(logging, level_name, logging.INFO))
    app_logger.handlers.clear()

    _attach(app_logger, logging.StreamHandler(sys.stdout))
    if settings.LOG_FILENAME:
        try:
            _attach(app_logger, RotatingFileHandler(
                settings.LOG_FILENAME,
                maxBytes=settings.LOG_MAX_BYTES,
                backupCount=settings.LOG_BACKUP_COUNT,
                encoding="utf-8",
            ))
        except OSError as e:
            app_logger.error(f"Cannot open log file {settings.LOG_FILENAME}; logging to console only: {e}")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app_logger.info(f"Logging configured at {level_name}")
    return app_logger

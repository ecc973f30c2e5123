import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("treasury_service")

file_handler = None


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure the package logger; optionally add a daily rotating file handler."""
    global file_handler
    logger.setLevel(level.upper())
    formatter = logging.Formatter(LOG_FORMAT)
    if file_handler:
        file_handler.close()
        file_handler = None
    handlers = []
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        # Daily rotation, keep 14 days
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=14)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    logger.handlers = handlers
    logger.info("Logging initialized (level=%s, file=%s)", level.upper(), log_file or "-")
    return logger


def close_logging():
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None

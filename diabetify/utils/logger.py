"""
Centralized Logging Module
Provides consistent logging configuration across the service.
"""

import logging
import sys
import os
from datetime import datetime

# Log directory
LOG_DIR = os.getenv('LOG_DIR', os.path.join(os.getcwd(), 'logs'))

# Log format
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Log level from environment (default: INFO)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()


def get_logger(name: str, level: str = None) -> logging.Logger:
    """
    Creates and returns a configured logger.

    Args:
        name: Logger name (typically __name__)
        level: Optional log level override

    Returns:
        Configured Logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    log_level = getattr(logging, level or LOG_LEVEL, logging.INFO)
    logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    logger.addHandler(console_handler)

    # File Handler (one file per day)
    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        log_file = os.path.join(LOG_DIR, f"diabetify_{datetime.now().strftime('%Y%m%d')}.log")
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(file_handler)
    except OSError as e:
        # File logging is optional; console output still works
        logger.warning(f"Could not set up file logging: {e}")

    return logger


def log_job_event(logger: logging.Logger, job_id: str, user_id: int, status: str, detail: str = None):
    """
    Structured logging for prediction job lifecycle events.

    Args:
        logger: Logger instance
        job_id: Prediction job identifier
        user_id: Owning user
        status: Status the job moved to
        detail: Optional free text (error message, timings)
    """
    message = f"JOB | Id: {job_id} | User: {user_id} | Status: {status}"
    if detail:
        message += f" | {detail}"
    logger.info(message)


def log_shard_route(logger: logging.Logger, user_id: int, shard_name: str, fallback: bool = False):
    """
    Structured logging for shard routing decisions.

    Args:
        logger: Logger instance
        user_id: User the operation is anchored on
        shard_name: Shard selected for the user
        fallback: Whether the id fell outside every configured range
    """
    if fallback:
        logger.warning(f"SHARD | User: {user_id} outside configured ranges | Using: {shard_name}")
    else:
        logger.debug(f"SHARD | User: {user_id} | Shard: {shard_name}")


# Application-wide logger instance
app_logger = get_logger('diabetify')

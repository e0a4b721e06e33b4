# logging_config.py
import logging

from lab_scheduler.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Send every lab_scheduler logger to stderr at ``level``."""
    logger = logging.getLogger("lab_scheduler")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(getattr(handler, "_lab_scheduler", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._lab_scheduler = True
        logger.addHandler(handler)

"""Logging configuration for the commission ledger service."""
import logging
import sys
from typing import Optional

from app.config import settings

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy", "apscheduler", "stripe", "httpx")


def setup_logging(level: Optional[str] = None) -> int:
    """
    Configure logging for the API and the ledger jobs.

    Args:
        level: Level name such as "debug" or "WARNING". Defaults to
               ``settings.LOG_LEVEL``; unknown names fall back to INFO.

    Returns:
        The numeric level applied.
    """
    log_level = logging.getLevelName((level or settings.LOG_LEVEL).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(processName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
    return log_level

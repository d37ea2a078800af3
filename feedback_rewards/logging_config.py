"""Logging setup shared by workers and the embedding application."""

import logging

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = None) -> None:
    """Apply the configured log level to the root logger."""
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    # httpx logs every provider request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

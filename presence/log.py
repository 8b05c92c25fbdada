"""Logging setup shared by the server, the ingest loop and the batch jobs."""

import logging

from presence.config import config

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging() -> None:
    """Configure root logging once per process."""
    level = logging.DEBUG if config.debug else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)

    # SQL echo is noisy at INFO; only surface it in debug mode
    if not config.debug:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

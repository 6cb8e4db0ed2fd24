"""Shared logger for the query service.

Every module does ``from report_query.logger import logger`` so the whole
pipeline writes through one configured handler.
"""

import logging

from report_query.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

logger = logging.getLogger("report_query")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(_handler)

logger.setLevel(LOG_LEVEL.upper())

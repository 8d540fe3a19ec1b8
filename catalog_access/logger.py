"""
Logging setup for the catalog access core.

Modules obtain their logger through ``get_logger(__name__)``. The level named
by ``settings.log_level`` applies to the ``catalog_access`` logger tree only;
a stdout handler is attached to the root logger only when the host
application has not configured one.
"""

import logging
import sys

from catalog_access.config import settings

PACKAGE_LOGGER = 'catalog_access'
LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_configured = False


def _level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | None = None, stream=None) -> logging.Handler | None:
    """Apply the package log level; return the handler added, if any."""
    logging.getLogger(PACKAGE_LOGGER).setLevel(_level(level or settings.log_level))
    root = logging.getLogger()
    if root.handlers:
        return None
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root.addHandler(handler)
    return handler


def get_logger(name: str) -> logging.Logger:
    global _configured
    if not _configured:
        configure_logging()
        _configured = True
    return logging.getLogger(name)

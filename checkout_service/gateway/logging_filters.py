"""Logging filters and JSON logger setup.

``RequestIdFilter`` injects the current request id into every record using
the ContextVar set by ``RequestIdMiddleware``, so formatters can reference
``%(request_id)s`` without each call site passing it. ``configure_logging``
installs a ``python-json-logger`` handler on the service's root logger.
"""

import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from .middleware import REQUEST_ID_CTX

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    If no value is present a hyphen ("-") is used as placeholder.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True


def configure_logging(level: str = "INFO", name: str = "checkout") -> logging.Logger:
    """Install a JSON handler on the ``checkout`` logger once.

    Child loggers (``checkout.pricing``, ``checkout.webhooks`` ...) propagate
    to it.

    Args:
        level: Log level name.
        name: Logger name to configure.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        h.addFilter(RequestIdFilter())
        logger.addHandler(h)
    logger.setLevel(level.upper())
    return logger

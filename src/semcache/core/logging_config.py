"""
Logging configuration for SemCache.

Configures structured logging with automatic request trace ID injection.
Every log line includes the correlation ID and the authenticated project
from the request context.
"""

import logging

from semcache.core.context import get_project_id, get_request_id


class RequestIdFilter(logging.Filter):
    """Logging filter that injects the request trace ID into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add request_id and project_id attributes to the log record from context."""
        record.request_id = get_request_id()  # type: ignore[attr-defined]
        record.project_id = get_project_id()  # type: ignore[attr-defined]
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure logging with trace ID injection for all handlers.

    Sets up a console handler with a format that includes the request
    trace ID and project on every log line. Applies the RequestIdFilter
    globally so all loggers benefit from automatic context injection.
    """
    log_format = (
        "[%(asctime)s] [%(levelname)s] [%(request_id)s] [%(project_id)s] %(name)s: %(message)s"
    )

    request_id_filter = RequestIdFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates on repeated calls
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(log_format))
    console_handler.addFilter(request_id_filter)

    root_logger.addHandler(console_handler)

    # httpx logs every request line at INFO, including provider URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)

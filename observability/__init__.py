"""Logging for SiteFoundry services and CLI commands."""

from .logging import (
    ColoredFormatter,
    JSONFormatter,
    StructuredLogger,
    get_logger,
    get_structured_logger,
    record_context,
    setup_logging,
)

__all__ = [
    'ColoredFormatter',
    'JSONFormatter',
    'StructuredLogger',
    'get_logger',
    'get_structured_logger',
    'record_context',
    'setup_logging',
]

"""Core module exports."""

from cataloger.core.errors import (
    CatalogerError,
    ConfigError,
    ErrorCode,
    InvalidArgumentError,
    ParseError,
    SourceError,
    StoreError,
)
from cataloger.core.logging import (
    clear_scan_id,
    configure_logging,
    get_logger,
    get_scan_id,
    scan_scope,
    set_scan_id,
)
from cataloger.core.progress import progress, spinner, status

__all__ = [
    # Errors
    "CatalogerError",
    "ConfigError",
    "ErrorCode",
    "InvalidArgumentError",
    "ParseError",
    "SourceError",
    "StoreError",
    # Logging
    "clear_scan_id",
    "configure_logging",
    "get_logger",
    "get_scan_id",
    "scan_scope",
    "set_scan_id",
    # Progress
    "progress",
    "spinner",
    "status",
]

"""Config module exports."""

from cataloger.config.loader import get_kb_path, load_config
from cataloger.config.models import (
    CatalogerConfig,
    DatabaseConfig,
    LoggingConfig,
    SamplingConfig,
    ScanConfig,
)

__all__ = [
    "load_config",
    "get_kb_path",
    "CatalogerConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "SamplingConfig",
    "ScanConfig",
]

"""Common utilities for webbundle_dump packages."""

from .config import ConfigLoader
from .config_utils import expand_path_variables
from .logging import setup_logging, LogContext
from .logging_config import LoggingConfig
from .errors import (
    BundleDumpError, FileProcessingError, PermissionDeniedError,
    ParseError, TruncatedDataError
)
from .path_utils import normalize_path
from .checksums import compute_crc32, compute_crc32_bytes

__all__ = [
    'ConfigLoader',
    'LoggingConfig',
    'expand_path_variables',
    'setup_logging',
    'LogContext',
    'BundleDumpError',
    'FileProcessingError',
    'PermissionDeniedError',
    'ParseError',
    'TruncatedDataError',
    'normalize_path',
    'compute_crc32',
    'compute_crc32_bytes',
]

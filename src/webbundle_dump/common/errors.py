"""Base error definitions for webbundle_dump packages."""

from typing import Any, Dict


class BundleDumpError(Exception):
    """Base exception for all webbundle_dump errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class FileProcessingError(BundleDumpError):
    """Base exception for file processing errors."""
    pass


class PermissionDeniedError(FileProcessingError):
    """File access denied due to permissions."""
    pass


class ParseError(FileProcessingError):
    """Error parsing binary structures."""
    pass


class TruncatedDataError(ParseError):
    """A read ran past the end of the available bytes."""
    pass

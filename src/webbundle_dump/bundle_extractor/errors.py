"""Extraction-specific errors.

Container and archive errors end the run. Entry errors are recorded in the
extraction summary and the run continues with the next entry.
"""

from webbundle_dump.common import BundleDumpError


class ContainerError(BundleDumpError):
    """The executable container could not be used."""
    pass


class UnsupportedContainerError(ContainerError):
    """Input is not a PE, Mach-O or ELF image."""
    pass


class NoCandidateSectionError(ContainerError):
    """A locator found no section data to search."""
    pass


class ArchiveError(BundleDumpError):
    """Archive processing failed."""
    pass


class ArchiveNotFoundError(ArchiveError):
    """No candidate range decoded as a valid archive."""
    pass


class CandidateRejectedError(ArchiveError):
    """A single candidate range failed archive validation."""
    pass


class EntryError(BundleDumpError):
    """A single archive entry could not be extracted."""
    pass


class CorruptEntryError(EntryError):
    """Entry offset, length or decompressed size is inconsistent."""
    pass


class UnsafeEntryPathError(EntryError):
    """Entry path is absolute or escapes the output root."""
    pass


class WriteFailureError(EntryError):
    """Filesystem error while writing an entry."""
    pass


class LocatorUnreliableWarning(UserWarning):
    """Locator output should not be assumed complete or correct."""
    pass


def classify_error(exception: Exception) -> str:
    """
    Classify an entry-level exception into an error category.
    
    Args:
        exception: The exception to classify
        
    Returns:
        Error category string: 'corrupt', 'unsafe_path', 'write',
        'permission', 'io', or 'unknown'
    """
    if isinstance(exception, CorruptEntryError):
        return 'corrupt'
    elif isinstance(exception, UnsafeEntryPathError):
        return 'unsafe_path'
    elif isinstance(exception, WriteFailureError):
        cause = exception.__cause__
        if isinstance(cause, PermissionError):
            return 'permission'
        return 'write'
    elif isinstance(exception, PermissionError):
        return 'permission'
    elif isinstance(exception, OSError):
        return 'io'
    else:
        return 'unknown'

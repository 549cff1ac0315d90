"""Embedded web-app bundle extraction from PE, Mach-O and ELF executables."""

from .archive import ArchiveDecoder, DecodedArchive, DecodedEntry, encode_archive
from .byte_source import ByteRange, ByteSource
from .config import BundleExtractorConfig, ExtractionConfig
from .errors import (
    ArchiveNotFoundError, CandidateRejectedError, CorruptEntryError,
    LocatorUnreliableWarning, NoCandidateSectionError, UnsafeEntryPathError,
    UnsupportedContainerError, WriteFailureError
)
from .pipeline import BundleExtractor
from .sniffer import ContainerKind, sniff
from .writer import EntryResult, ExtractionSummary, ExtractionWriter

__version__ = "0.1.0"

__all__ = [
    'ArchiveDecoder',
    'DecodedArchive',
    'DecodedEntry',
    'encode_archive',
    'ByteRange',
    'ByteSource',
    'BundleExtractorConfig',
    'ExtractionConfig',
    'ArchiveNotFoundError',
    'CandidateRejectedError',
    'CorruptEntryError',
    'LocatorUnreliableWarning',
    'NoCandidateSectionError',
    'UnsafeEntryPathError',
    'UnsupportedContainerError',
    'WriteFailureError',
    'BundleExtractor',
    'ContainerKind',
    'sniff',
    'EntryResult',
    'ExtractionSummary',
    'ExtractionWriter',
]

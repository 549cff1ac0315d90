"""Embedded resource archive format: reference encoder and decoder.

On-disk layout, all integers little-endian::

    header (16 bytes)
        magic           8   b"WBNDL\\x00\\r\\n"
        version         1   1
        reserved        3   zero
        entry count     4   u32

    index, one record per entry
        path length     2   u16, at least 1
        path            n   UTF-8, forward-slash separated
        payload offset  8   u64, from the first magic byte
        stored length   8   u64
        full length     8   u64, length after decompression
        compression     1   0 none, 1 raw deflate, 2 brotli

    payloads            concatenated, after the index

The archive carries no total length. Its extent is the candidate range the
locator proposed, which runs to the end of the containing region.
"""

import logging
import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import brotli

from webbundle_dump.common import TruncatedDataError, normalize_path
from .byte_source import ByteRange, ByteSource
from .errors import (
    ArchiveNotFoundError,
    CandidateRejectedError,
    CorruptEntryError,
    EntryError,
    UnsafeEntryPathError,
)

logger = logging.getLogger(__name__)

ARCHIVE_MAGIC = b"WBNDL\x00\r\n"
SUPPORTED_VERSIONS = frozenset({1})
CURRENT_VERSION = 1

HEADER_FORMAT = "<8sB3xI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 16
PATH_LENGTH_FORMAT = "<H"
ENTRY_FIELDS_FORMAT = "<QQQB"
ENTRY_FIELDS_SIZE = struct.calcsize(ENTRY_FIELDS_FORMAT)  # 25
# u16 length, one path byte, fixed fields
MIN_ENTRY_SIZE = 2 + 1 + ENTRY_FIELDS_SIZE

DEFAULT_MAX_ENTRY_SIZE = 512 * 1024 * 1024


class CompressionKind(IntEnum):
    NONE = 0
    DEFLATE = 1
    BROTLI = 2


@dataclass(frozen=True)
class ArchiveHeader:
    magic: bytes
    version: int
    entry_count: int


@dataclass(frozen=True)
class ArchiveEntry:
    """One validated index record.

    ``path`` is the raw name as stored. ``error`` is set when the record is
    unusable (unsafe path, out-of-range payload, bad name encoding); such
    entries are reported and never read.
    """
    path: str
    payload_offset: int
    stored_length: int
    uncompressed_length: int
    compression: int
    safe_path: Optional[str] = None
    error: Optional[EntryError] = None


@dataclass
class DecodedEntry:
    """Decoder output for one entry: content on success, error otherwise."""
    path: str
    content: Optional[bytes] = None
    error: Optional[EntryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def validate_entry_path(path: str) -> str:
    """Return the normalized relative form of an archive path.

    Raises:
        UnsafeEntryPathError: absolute, drive-qualified, NUL-bearing or
            traversing paths, and paths with nothing left after
            normalization
    """
    if "\x00" in path:
        raise UnsafeEntryPathError(f"Entry path contains NUL: {path!r}", path=path)

    normalized = normalize_path(path)
    if normalized.startswith("/"):
        raise UnsafeEntryPathError(f"Absolute entry path: {path!r}", path=path)
    if len(normalized) >= 2 and normalized[1] == ":" and normalized[0].isalpha():
        raise UnsafeEntryPathError(f"Drive-qualified entry path: {path!r}", path=path)

    parts = []
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise UnsafeEntryPathError(f"Path traversal in entry path: {path!r}", path=path)
        parts.append(part)

    if not parts:
        raise UnsafeEntryPathError(f"Empty entry path: {path!r}", path=path)

    return "/".join(parts)


def brotli_decompress(payload: bytes, limit: int) -> bytes:
    """Expand a complete Brotli stream into at most ``limit`` bytes.

    Output is produced in bounded steps, so a small payload that would
    expand past ``limit`` is stopped without inflating the rest of it.

    Raises:
        CorruptEntryError: invalid or truncated stream, or output past ``limit``
    """
    decompressor = brotli.Decompressor()
    chunks = []
    produced = 0
    pending = payload
    try:
        while True:
            # One byte of headroom tells "exactly limit" from "more than limit"
            chunk = decompressor.process(pending, output_buffer_limit=limit + 1 - produced)
            pending = b""
            produced += len(chunk)
            if produced > limit:
                raise CorruptEntryError(f"Decompressed output exceeds {limit} bytes", limit=limit)
            chunks.append(chunk)
            if decompressor.is_finished():
                break
            if not chunk:
                raise CorruptEntryError("Truncated Brotli stream")
    except brotli.error as e:
        raise CorruptEntryError(f"Decompression failed: {e}") from e
    return b"".join(chunks)


def _decompress(
    compression: int,
    payload: bytes,
    expected_length: int,
) -> bytes:
    """Expand ``payload``. Raises CorruptEntryError on any failure."""
    if compression == CompressionKind.NONE:
        return payload

    if compression == CompressionKind.BROTLI:
        return brotli_decompress(payload, expected_length)

    if compression == CompressionKind.DEFLATE:
        decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
        try:
            # One byte of headroom detects an overlong stream without inflating all of it
            content = decompressor.decompress(payload, expected_length + 1)
        except zlib.error as e:
            raise CorruptEntryError(f"Decompression failed: {e}") from e
        if len(content) <= expected_length and not decompressor.eof:
            raise CorruptEntryError("Truncated DEFLATE stream")
        return content

    raise CorruptEntryError(f"Unsupported compression kind {compression}")


def decode_entry(source: ByteSource, archive_range: ByteRange, entry: ArchiveEntry,
                 max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE) -> bytes:
    """Slice and expand one validated entry.

    Raises:
        CorruptEntryError: size limit exceeded, decompression failure or
            length mismatch
    """
    if entry.uncompressed_length > max_entry_size:
        raise CorruptEntryError(
            f"Declared size {entry.uncompressed_length} exceeds limit {max_entry_size}",
            path=entry.path,
        )

    payload = source.read(archive_range.start + entry.payload_offset, entry.stored_length)
    try:
        content = _decompress(entry.compression, payload, entry.uncompressed_length)
    except CorruptEntryError as e:
        e.context.setdefault("path", entry.path)
        raise

    if len(content) != entry.uncompressed_length:
        raise CorruptEntryError(
            f"Decompressed {len(content)} bytes, expected {entry.uncompressed_length}",
            path=entry.path,
        )
    return content


def read_header(source: ByteSource, candidate: ByteRange) -> ArchiveHeader:
    """Parse and validate the archive header at the start of ``candidate``.

    Raises:
        CandidateRejectedError: wrong magic, unknown version, or an entry
            count the range cannot possibly hold
    """
    if candidate.length < HEADER_SIZE:
        raise CandidateRejectedError(f"Range {candidate} too small for header")

    magic, version, entry_count = source.unpack(HEADER_FORMAT, candidate.start)
    if magic != ARCHIVE_MAGIC:
        raise CandidateRejectedError(f"Bad magic at {candidate}")
    if version not in SUPPORTED_VERSIONS:
        raise CandidateRejectedError(f"Unsupported archive version {version}", version=version)

    remaining = candidate.length - HEADER_SIZE
    if entry_count * MIN_ENTRY_SIZE > remaining:
        raise CandidateRejectedError(
            f"Entry count {entry_count} needs at least {entry_count * MIN_ENTRY_SIZE} "
            f"index bytes, range has {remaining}",
            entry_count=entry_count,
        )

    return ArchiveHeader(magic=magic, version=version, entry_count=entry_count)


def read_index(source: ByteSource, candidate: ByteRange,
               header: ArchiveHeader) -> Tuple[List[ArchiveEntry], int]:
    """Read all index records following the header.

    Returns:
        Tuple of (entries, index end offset relative to the archive start)

    Raises:
        CandidateRejectedError: the index runs past the candidate range
    """
    entries: List[ArchiveEntry] = []
    limit = candidate.end
    cursor = candidate.start + HEADER_SIZE

    try:
        for i in range(header.entry_count):
            if cursor + 2 > limit:
                raise CandidateRejectedError(f"Index truncated at entry {i}")
            (path_length,) = source.unpack(PATH_LENGTH_FORMAT, cursor)
            cursor += 2
            if path_length == 0 or cursor + path_length + ENTRY_FIELDS_SIZE > limit:
                raise CandidateRejectedError(f"Index record {i} overruns range {candidate}")

            raw_path = source.read(cursor, path_length)
            cursor += path_length
            offset, stored, full, compression = source.unpack(ENTRY_FIELDS_FORMAT, cursor)
            cursor += ENTRY_FIELDS_SIZE

            entries.append(_record(raw_path, offset, stored, full, compression))
    except TruncatedDataError as e:
        raise CandidateRejectedError(f"Index read failed: {e}") from e

    index_end = cursor - candidate.start
    return [_check_bounds(entry, index_end, candidate.length) for entry in entries], index_end


def _record(raw_path: bytes, offset: int, stored: int, full: int, compression: int) -> ArchiveEntry:
    try:
        path = raw_path.decode("utf-8")
    except UnicodeDecodeError:
        path = raw_path.decode("utf-8", errors="replace")
        return ArchiveEntry(path, offset, stored, full, compression,
                            error=CorruptEntryError(f"Entry path is not UTF-8: {path!r}", path=path))

    try:
        safe_path = validate_entry_path(path)
    except UnsafeEntryPathError as e:
        return ArchiveEntry(path, offset, stored, full, compression, error=e)

    return ArchiveEntry(path, offset, stored, full, compression, safe_path=safe_path)


def _check_bounds(entry: ArchiveEntry, index_end: int, archive_length: int) -> ArchiveEntry:
    if entry.error is not None:
        return entry
    if entry.payload_offset < index_end or entry.payload_offset + entry.stored_length > archive_length:
        return ArchiveEntry(
            entry.path, entry.payload_offset, entry.stored_length,
            entry.uncompressed_length, entry.compression,
            error=CorruptEntryError(
                f"Payload [0x{entry.payload_offset:x}, +0x{entry.stored_length:x}) "
                f"outside archive data [0x{index_end:x}, 0x{archive_length:x})",
                path=entry.path,
            ),
        )
    return entry


class DecodedArchive:
    """An archive validated at a specific candidate range.

    Iterating re-decodes from the stored range each time; a single iteration
    is lazy and cannot be resumed part way.
    """

    def __init__(self, source: ByteSource, archive_range: ByteRange,
                 header: ArchiveHeader, entries: List[ArchiveEntry],
                 max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE) -> None:
        self.source = source
        self.range = archive_range
        self.header = header
        self.entries = entries
        self.max_entry_size = max_entry_size

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[DecodedEntry]:
        for entry in self.entries:
            if entry.error is not None:
                yield DecodedEntry(path=entry.path, error=entry.error)
                continue
            try:
                content = decode_entry(self.source, self.range, entry, self.max_entry_size)
            except CorruptEntryError as e:
                yield DecodedEntry(path=entry.safe_path, error=e)
                continue
            yield DecodedEntry(path=entry.safe_path, content=content)

    def files(self) -> Iterator[Tuple[str, bytes]]:
        """(path, content) pairs for entries that decoded cleanly."""
        for decoded in self:
            if decoded.ok:
                yield decoded.path, decoded.content


class ArchiveDecoder:
    """Tries candidate ranges in order and decodes the first valid archive."""

    def __init__(self, source: ByteSource, max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE) -> None:
        self.source = source
        self.max_entry_size = max_entry_size

    def open(self, candidate: ByteRange) -> DecodedArchive:
        """Validate one candidate.

        Raises:
            CandidateRejectedError: the range does not hold a usable archive
        """
        header = read_header(self.source, candidate)
        entries, index_end = read_index(self.source, candidate, header)
        logger.debug(f"Archive index at {candidate}: {len(entries)} entries, payloads from +0x{index_end:x}")
        return DecodedArchive(self.source, candidate, header, entries, self.max_entry_size)

    def decode(self, candidates: Sequence[ByteRange]) -> DecodedArchive:
        """Return the first candidate that validates.

        Raises:
            ArchiveNotFoundError: every candidate was rejected
        """
        rejections = []
        for candidate in candidates:
            try:
                archive = self.open(candidate)
            except CandidateRejectedError as e:
                logger.debug(f"Rejected candidate {candidate}: {e.message}")
                rejections.append(f"{candidate}: {e.message}")
                continue
            logger.info(f"Archive found at {candidate} (version {archive.header.version}, {len(archive)} entries)")
            return archive

        raise ArchiveNotFoundError(
            f"No valid archive among {len(candidates)} candidate range(s)",
            stage="decode",
            rejections=rejections,
        )


def _compress(compression: int, data: bytes) -> bytes:
    if compression == CompressionKind.NONE:
        return data
    if compression == CompressionKind.DEFLATE:
        compressor = zlib.compressobj(level=9, wbits=-zlib.MAX_WBITS)
        return compressor.compress(data) + compressor.flush()
    if compression == CompressionKind.BROTLI:
        return brotli.compress(data)
    raise ValueError(f"Unsupported compression kind {compression}")


def encode_archive(
    files: Sequence[Tuple[str, bytes]],
    compression: int = CompressionKind.NONE,
    version: int = CURRENT_VERSION,
    compression_for: Optional[Callable[[str], int]] = None,
) -> bytes:
    """Build an archive image from (path, content) pairs.

    Args:
        files: Entries in index order; paths are stored verbatim
        compression: Compression kind for every entry
        version: Version byte to write
        compression_for: Optional per-path override of ``compression``

    Returns:
        Archive bytes starting with the magic
    """
    payloads = []
    index_size = 0
    for path, content in files:
        kind = compression_for(path) if compression_for else compression
        encoded_path = path.encode("utf-8")
        payloads.append((encoded_path, kind, len(content), _compress(kind, content)))
        index_size += 2 + len(encoded_path) + ENTRY_FIELDS_SIZE

    header = struct.pack(HEADER_FORMAT, ARCHIVE_MAGIC, version, len(payloads))
    index = bytearray()
    offset = HEADER_SIZE + index_size
    for encoded_path, kind, full_length, stored in payloads:
        index += struct.pack(PATH_LENGTH_FORMAT, len(encoded_path)) + encoded_path
        index += struct.pack(ENTRY_FIELDS_FORMAT, offset, len(stored), full_length, kind)
        offset += len(stored)

    return header + bytes(index) + b"".join(stored for _, _, _, stored in payloads)

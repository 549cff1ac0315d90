"""Fallback for toolchains that compile assets straight into read-only data.

Such binaries carry no archive header. Instead a table of fixed-size records
points at each asset's name and Brotli-compressed bytes::

    name_ptr  u64   virtual address of the name, which starts with "/"
    name_len  u64
    data_ptr  u64   virtual address of the compressed payload
    data_len  u64

Both pointers land inside the same read-only data section as the table.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import brotli

from .archive import DEFAULT_MAX_ENTRY_SIZE, DecodedEntry, brotli_decompress, validate_entry_path
from .byte_source import ByteSource
from .errors import CorruptEntryError, UnsafeEntryPathError
from .locators.base import SectionDescriptor

logger = logging.getLogger(__name__)

RECORD_FORMAT = "<QQQQ"
RECORD_SIZE = struct.calcsize(RECORD_FORMAT)  # 32
POINTER_STEP = 8
# Output decoded per candidate record while scanning
SCAN_PROBE_LIMIT = 64 * 1024


@dataclass(frozen=True)
class AssetRecord:
    name: str
    data_offset: int
    data_length: int
    record_offset: int


class AssetTable:
    """Assets found by scanning read-only data sections for pointer records."""

    def __init__(self, source: ByteSource, records: List[AssetRecord],
                 max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE) -> None:
        self.source = source
        self.records = records
        self.max_entry_size = max_entry_size

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[DecodedEntry]:
        for record in self.records:
            relative = record.name[1:]
            try:
                path = validate_entry_path(relative)
            except UnsafeEntryPathError as e:
                yield DecodedEntry(path=record.name, error=e)
                continue

            payload = self.source.read(record.data_offset, record.data_length)
            try:
                content = brotli_decompress(payload, self.max_entry_size)
            except CorruptEntryError as e:
                e.context.setdefault("path", record.name)
                yield DecodedEntry(path=path, error=e)
                continue
            yield DecodedEntry(path=path, content=content)


def _brotli_prefix_decodes(payload: bytes) -> bool:
    """True if ``payload`` decodes cleanly up to SCAN_PROBE_LIMIT bytes of output.

    A stream that goes bad past the probe is still accepted here and
    reported as corrupt when the table is read.
    """
    decompressor = brotli.Decompressor()
    try:
        chunk = decompressor.process(payload, output_buffer_limit=SCAN_PROBE_LIMIT)
    except brotli.error:
        return False
    return decompressor.is_finished() or len(chunk) == SCAN_PROBE_LIMIT


class AssetTableScanner:
    """Scans sections with an 8-byte stride until a record validates, then
    steps record by record."""

    def __init__(self, source: ByteSource, max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE) -> None:
        self.source = source
        self.max_entry_size = max_entry_size

    def scan(self, sections: Sequence[SectionDescriptor]) -> AssetTable:
        records: List[AssetRecord] = []
        for section in sections:
            if section.virtual_address is None:
                continue
            found = self._scan_section(section)
            logger.debug(f"Asset table scan of {section.qualified_name}: {len(found)} record(s)")
            records.extend(found)
        return AssetTable(self.source, records, self.max_entry_size)

    def _scan_section(self, section: SectionDescriptor) -> List[AssetRecord]:
        records = []
        offset = section.offset
        step = POINTER_STEP
        while offset + RECORD_SIZE <= section.end:
            record = self._parse_record(section, offset)
            if record is not None:
                records.append(record)
                step = RECORD_SIZE
            offset += step
        return records

    def _parse_record(self, section: SectionDescriptor, offset: int) -> Optional[AssetRecord]:
        name_ptr, name_len, data_ptr, data_len = self.source.unpack(RECORD_FORMAT, offset)
        if name_len == 0 or data_len == 0:
            return None
        if not (section.contains_address(name_ptr, name_len)
                and section.contains_address(data_ptr, data_len)):
            return None

        name_offset = section.address_to_offset(name_ptr)
        raw_name = self.source.read(name_offset, name_len)
        if raw_name[:1] != b"/" or not raw_name.isascii():
            return None

        data_offset = section.address_to_offset(data_ptr)
        if not _brotli_prefix_decodes(self.source.read(data_offset, data_len)):
            return None

        return AssetRecord(raw_name.decode("ascii"), data_offset, data_len, offset)

"""Shared locator types and the magic-confirmed candidate search."""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from ..archive import ARCHIVE_MAGIC
from ..byte_source import ByteRange, ByteSource
from ..sniffer import ContainerKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SectionDescriptor:
    """Format-neutral description of one section or segment.

    ``offset`` and ``size`` are clamped to the source so that
    ``byte_range`` always lies inside it.
    """
    name: str
    offset: int
    size: int
    virtual_address: Optional[int] = None
    segment: Optional[str] = None

    @property
    def byte_range(self) -> ByteRange:
        return ByteRange(self.offset, self.size)

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def qualified_name(self) -> str:
        if self.segment:
            return f"{self.segment},{self.name}"
        return self.name

    def contains_address(self, address: int, length: int = 0) -> bool:
        if self.virtual_address is None:
            return False
        return (self.virtual_address <= address
                and address + length <= self.virtual_address + self.size)

    def address_to_offset(self, address: int) -> int:
        return self.offset + (address - self.virtual_address)


class Locator(Protocol):
    """Finds byte ranges that may hold the embedded archive."""

    kind: ContainerKind

    def sections(self, source: ByteSource) -> List[SectionDescriptor]:
        ...

    def candidates(self, source: ByteSource) -> List[ByteRange]:
        ...

    def data_sections(self, source: ByteSource) -> List[SectionDescriptor]:
        ...


def clamp_section(name: str, offset: int, size: int, total: int,
                  virtual_address: Optional[int] = None,
                  segment: Optional[str] = None) -> Optional[SectionDescriptor]:
    """Describe a section, trimmed to the source; None if it has no file bytes."""
    byte_range = ByteRange.clamp(offset, size, total)
    if byte_range is None:
        return None
    return SectionDescriptor(name, byte_range.start, byte_range.length, virtual_address, segment)


def find_magic(source: ByteSource, region: ByteRange, magic: bytes = ARCHIVE_MAGIC) -> Iterable[ByteRange]:
    """Every magic occurrence in ``region``, each running to the region end."""
    position = source.find(magic, region.start, region.end)
    while position != -1:
        yield ByteRange(position, region.end - position)
        position = source.find(magic, position + 1, region.end)


def tail_region(source: ByteSource, sections: Iterable[SectionDescriptor],
                start: int = 0, end: Optional[int] = None) -> Optional[ByteRange]:
    """Bytes after the last mapped section, up to ``end``."""
    if end is None:
        end = len(source)
    last = max((s.end for s in sections), default=start)
    if last >= end:
        return None
    return ByteRange(last, end - last)


def rank_candidates(
    source: ByteSource,
    custom: List[SectionDescriptor],
    readonly: List[SectionDescriptor],
    other: List[SectionDescriptor],
    tail: Optional[ByteRange],
    magic: bytes = ARCHIVE_MAGIC,
) -> List[ByteRange]:
    """Order candidate ranges most-likely first.

    Custom sections that begin with the magic come first, then magic hits
    inside custom, read-only and remaining sections, then the raw tail.
    """
    ordered: List[ByteRange] = []
    seen = set()

    def add(byte_range: ByteRange) -> None:
        if byte_range.start not in seen:
            seen.add(byte_range.start)
            ordered.append(byte_range)

    for section in custom:
        if source.startswith(magic, section.offset):
            add(section.byte_range)

    for group in (custom, readonly, other):
        for section in group:
            for hit in find_magic(source, section.byte_range, magic):
                add(hit)

    if tail is not None:
        for hit in find_magic(source, tail, magic):
            add(hit)

    logger.debug(f"Ranked {len(ordered)} candidate range(s)")
    return ordered

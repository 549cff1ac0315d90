"""Portable Executable section enumeration on top of pefile."""

import logging
from typing import List, Optional

import pefile

from ..byte_source import ByteRange, ByteSource
from ..errors import NoCandidateSectionError
from ..sniffer import ContainerKind
from .base import SectionDescriptor, clamp_section, rank_candidates

logger = logging.getLogger(__name__)

CONVENTIONAL_SECTIONS = frozenset({
    ".text", ".data", ".rdata", ".rsrc", ".bss", ".idata", ".edata",
    ".pdata", ".reloc", ".tls", ".CRT", ".00cfg", ".didat",
})
READONLY_SECTIONS = (".rdata",)


class PELocator:
    """Finds archive candidates in a PE image."""

    kind = ContainerKind.PE

    def _parse(self, source: ByteSource) -> pefile.PE:
        # Data directories are never needed; sections and the optional header are
        try:
            return pefile.PE(data=source.buffer, fast_load=True)
        except pefile.PEFormatError as e:
            raise NoCandidateSectionError(
                f"Invalid PE headers: {e.value}",
                container_kind=self.kind.value, stage="headers",
            ) from e

    def _sections(self, source: ByteSource, pe: pefile.PE) -> List[SectionDescriptor]:
        total = len(source)
        image_base = pe.OPTIONAL_HEADER.ImageBase

        sections = []
        for pe_section in pe.sections:
            name = pe_section.Name.rstrip(b"\x00").decode("latin-1")
            section = clamp_section(name, pe_section.PointerToRawData, pe_section.SizeOfRawData,
                                    total, virtual_address=image_base + pe_section.VirtualAddress)
            if section is None:
                logger.debug(f"Section {name!r} has no file data")
                continue
            sections.append(section)

        if not sections:
            raise NoCandidateSectionError(
                "PE image has no section data",
                container_kind=self.kind.value, stage="sections",
            )
        return sections

    def sections(self, source: ByteSource) -> List[SectionDescriptor]:
        """Enumerate sections that have file-backed data.

        Raises:
            NoCandidateSectionError: headers are corrupt or no section has
                raw data inside the file
        """
        return self._sections(source, self._parse(source))

    def data_sections(self, source: ByteSource) -> List[SectionDescriptor]:
        return [s for s in self.sections(source) if s.name in READONLY_SECTIONS]

    def _overlay(self, source: ByteSource, pe: pefile.PE) -> Optional[ByteRange]:
        start = pe.get_overlay_data_start_offset()
        if start is None:
            return None
        return ByteRange.clamp(start, len(source) - start, len(source))

    def candidates(self, source: ByteSource) -> List[ByteRange]:
        pe = self._parse(source)
        sections = self._sections(source, pe)
        custom = [s for s in sections if s.name not in CONVENTIONAL_SECTIONS]
        readonly = [s for s in sections if s.name in READONLY_SECTIONS]
        other = [s for s in sections if s not in custom and s not in readonly]
        logger.debug(f"PE sections: {[s.name for s in sections]}, custom: {[s.name for s in custom]}")
        return rank_candidates(source, custom, readonly, other, self._overlay(source, pe))

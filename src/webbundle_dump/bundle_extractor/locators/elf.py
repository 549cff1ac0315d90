"""ELF section enumeration on top of pyelftools. Experimental."""

import logging
import warnings
from typing import List

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from ..byte_source import ByteRange, ByteSource
from ..errors import LocatorUnreliableWarning, NoCandidateSectionError
from ..sniffer import ContainerKind
from .base import SectionDescriptor, clamp_section, rank_candidates, tail_region

logger = logging.getLogger(__name__)

SKIPPED_TYPES = frozenset({"SHT_NULL", "SHT_NOBITS"})

STANDARD_SECTIONS = frozenset({
    ".text", ".data", ".rodata", ".bss", ".symtab", ".strtab", ".shstrtab",
    ".dynsym", ".dynstr", ".dynamic", ".interp", ".init", ".fini", ".plt",
    ".plt.got", ".plt.sec", ".got", ".got.plt", ".eh_frame", ".eh_frame_hdr",
    ".init_array", ".fini_array", ".tdata", ".tbss", ".data.rel.ro", ".comment",
    ".hash",
})
STANDARD_PREFIXES = (".note", ".gnu", ".debug", ".rel", ".rela")
READONLY_SECTIONS = (".rodata",)


def _is_standard(name: str) -> bool:
    return name in STANDARD_SECTIONS or name.startswith(STANDARD_PREFIXES)


class ELFLocator:
    """Finds archive candidates in an ELF image.

    Not production-ready: every enumeration emits a
    ``LocatorUnreliableWarning`` which callers should treat as non-fatal.
    """

    kind = ContainerKind.ELF

    def _fail(self, message: str, stage: str) -> NoCandidateSectionError:
        return NoCandidateSectionError(message, container_kind=self.kind.value, stage=stage)

    def sections(self, source: ByteSource) -> List[SectionDescriptor]:
        message = "ELF support is experimental; results may be incomplete"
        warnings.warn(message, LocatorUnreliableWarning, stacklevel=2)

        try:
            elf = ELFFile(source.stream())
        except ELFError as e:
            raise self._fail(f"Invalid ELF headers: {e}", "headers") from e

        total = len(source)
        sections = []
        try:
            for index, elf_section in enumerate(elf.iter_sections()):
                if elf_section["sh_type"] in SKIPPED_TYPES:
                    continue
                name = elf_section.name or f"section{index}"
                section = clamp_section(name, elf_section["sh_offset"], elf_section["sh_size"],
                                        total, virtual_address=elf_section["sh_addr"])
                if section is not None:
                    sections.append(section)
        except ELFError as e:
            raise self._fail(f"Invalid ELF section table: {e}", "sections") from e

        if not sections:
            raise self._fail("ELF image has no section data", "sections")
        return sections

    def data_sections(self, source: ByteSource) -> List[SectionDescriptor]:
        return [s for s in self.sections(source) if s.name in READONLY_SECTIONS]

    def candidates(self, source: ByteSource) -> List[ByteRange]:
        sections = self.sections(source)
        custom = [s for s in sections if not _is_standard(s.name)]
        readonly = [s for s in sections if s.name in READONLY_SECTIONS]
        other = [s for s in sections if s not in custom and s not in readonly]
        return rank_candidates(source, custom, readonly, other, tail_region(source, sections))

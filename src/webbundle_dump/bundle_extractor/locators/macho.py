"""Mach-O load command walker, including fat (universal) slice selection."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from webbundle_dump.common import TruncatedDataError
from ..byte_source import ByteRange, ByteSource
from ..errors import NoCandidateSectionError
from ..sniffer import ContainerKind
from .base import SectionDescriptor, clamp_section, rank_candidates

logger = logging.getLogger(__name__)

# magic as read big-endian -> (byte order, 64-bit)
THIN_MAGICS = {
    0xFEEDFACE: (">", False),
    0xFEEDFACF: (">", True),
    0xCEFAEDFE: ("<", False),
    0xCFFAEDFE: ("<", True),
}
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF
# Java class files share CAFEBABE; their version field reads as a large slice count
MAX_FAT_ARCHS = 45

LC_SEGMENT = 0x1
LC_SEGMENT_64 = 0x19

SECTION_TYPE_MASK = 0xFF
ZEROFILL_TYPES = frozenset({0x1, 0xC, 0x12})  # S_ZEROFILL, S_GB_ZEROFILL, S_THREAD_LOCAL_ZEROFILL

CPU_ARCH_ABI64 = 0x01000000
CPU_TYPES = {
    "i386": 7,
    "x86_64": 7 | CPU_ARCH_ABI64,
    "arm": 12,
    "arm64": 12 | CPU_ARCH_ABI64,
    "ppc": 18,
    "ppc64": 18 | CPU_ARCH_ABI64,
}
CPU_SUBTYPE_ARM64E = 2
CPU_SUBTYPE_MASK = 0x00FFFFFF
ARCH_ALIASES = {
    "aarch64": "arm64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86": "i386",
}

CONVENTIONAL_SEGMENTS = frozenset({
    "__PAGEZERO", "__TEXT", "__DATA", "__DATA_CONST", "__DATA_DIRTY",
    "__LINKEDIT", "__OBJC", "__AUTH", "__AUTH_CONST",
})
READONLY_SECTIONS = (("__TEXT", "__const"),)


@dataclass(frozen=True)
class Slice:
    """One architecture image inside a (possibly fat) Mach-O file."""
    cpu_type: int
    cpu_subtype: int
    offset: int
    size: int

    @property
    def arch_name(self) -> str:
        if (self.cpu_type == CPU_TYPES["arm64"]
                and self.cpu_subtype & CPU_SUBTYPE_MASK == CPU_SUBTYPE_ARM64E):
            return "arm64e"
        for name, cpu_type in CPU_TYPES.items():
            if cpu_type == self.cpu_type:
                return name
        return f"cpu{self.cpu_type:#x}"


def normalize_arch(arch: str) -> str:
    arch = arch.strip().lower()
    return ARCH_ALIASES.get(arch, arch)


def _cstring(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("latin-1")


class MachOLocator:
    """Finds archive candidates in a thin or fat Mach-O file.

    Args:
        arch_hint: Architecture slice to use for fat files. None selects the
            first slice.
    """

    kind = ContainerKind.MACHO

    def __init__(self, arch_hint: Optional[str] = None) -> None:
        self.arch_hint = normalize_arch(arch_hint) if arch_hint else None

    def _fail(self, message: str, stage: str, **context) -> NoCandidateSectionError:
        return NoCandidateSectionError(message, container_kind=self.kind.value, stage=stage, **context)

    def slices(self, source: ByteSource) -> List[Slice]:
        """Architecture slices; a thin file is a single slice."""
        try:
            (magic,) = source.unpack(">I", 0)
            if magic in THIN_MAGICS:
                endian, is_64 = THIN_MAGICS[magic]
                cpu_type, cpu_subtype = source.unpack(f"{endian}ii", 4)
                return [Slice(cpu_type, cpu_subtype, 0, len(source))]

            if magic not in (FAT_MAGIC, FAT_MAGIC_64):
                raise self._fail(f"Unrecognized Mach-O magic 0x{magic:08x}", "headers")

            (count,) = source.unpack(">I", 4)
            if count == 0 or count >= MAX_FAT_ARCHS:
                raise self._fail(f"Implausible fat slice count {count}", "headers")

            slices = []
            if magic == FAT_MAGIC:
                entry_format, entry_size = ">iiIII", 20
            else:
                entry_format, entry_size = ">iiQQII", 32
            for i in range(count):
                cpu_type, cpu_subtype, offset, size, *_ = source.unpack(entry_format, 8 + i * entry_size)
                byte_range = ByteRange.clamp(offset, size, len(source))
                if byte_range is None:
                    logger.warning(f"Fat slice {i} lies outside the file")
                    continue
                slices.append(Slice(cpu_type, cpu_subtype, byte_range.start, byte_range.length))
        except TruncatedDataError as e:
            raise self._fail(f"Truncated Mach-O header: {e.message}", "headers") from e

        if not slices:
            raise self._fail("Fat header lists no usable slices", "headers")
        return slices

    def select_slice(self, source: ByteSource) -> Slice:
        """Pick the slice matching the architecture hint, or the first one.

        Raises:
            NoCandidateSectionError: no slice matches the hint
        """
        slices = self.slices(source)
        if self.arch_hint is None:
            chosen = slices[0]
        else:
            matches = [s for s in slices if s.arch_name == self.arch_hint]
            if not matches and self.arch_hint == "arm64":
                matches = [s for s in slices if s.arch_name == "arm64e"]
            if not matches:
                raise self._fail(
                    f"No slice for architecture {self.arch_hint!r}",
                    "slice",
                    available=[s.arch_name for s in slices],
                )
            chosen = matches[0]

        if len(slices) > 1:
            logger.info(f"Using {chosen.arch_name} slice at 0x{chosen.offset:x} "
                        f"(available: {', '.join(s.arch_name for s in slices)})")
        return chosen

    def _slice_sections(self, source: ByteSource, image: Slice) -> Tuple[List[SectionDescriptor], int]:
        """Sections of one slice, plus the file offset where its mapped data ends."""
        base = image.offset
        limit = image.offset + image.size
        (magic,) = source.unpack(">I", base)
        if magic not in THIN_MAGICS:
            raise self._fail(f"Slice at 0x{base:x} is not a Mach-O image", "headers")
        endian, is_64 = THIN_MAGICS[magic]

        header_format = f"{endian}IiiIIII" + ("I" if is_64 else "")
        _, _, _, _, ncmds, sizeofcmds, *_ = source.unpack(header_format, base)
        cursor = base + (32 if is_64 else 28)
        commands_end = min(cursor + sizeofcmds, limit)

        segment_cmd = LC_SEGMENT_64 if is_64 else LC_SEGMENT
        if is_64:
            segment_format = f"{endian}II16sQQQQiiII"
            section_format = f"{endian}16s16sQQIIIIIIII"
        else:
            segment_format = f"{endian}II16sIIIIiiII"
            section_format = f"{endian}16s16sIIIIIIIII"
        segment_size = 72 if is_64 else 56
        section_size = 80 if is_64 else 68

        sections: List[SectionDescriptor] = []
        mapped_end = base
        for i in range(ncmds):
            if cursor + 8 > commands_end:
                logger.warning(f"Load commands truncated after {i} of {ncmds}")
                break
            cmd, cmdsize = source.unpack(f"{endian}II", cursor)
            if cmdsize < 8 or cursor + cmdsize > commands_end:
                logger.warning(f"Load command {i} has invalid size {cmdsize}")
                break

            if cmd == segment_cmd and cmdsize >= segment_size:
                (_, _, raw_segname, vmaddr, _vmsize, fileoff, filesize,
                 _maxprot, _initprot, nsects, _flags) = source.unpack(segment_format, cursor)
                segname = _cstring(raw_segname)
                if filesize:
                    mapped_end = max(mapped_end, min(base + fileoff + filesize, limit))

                section_cursor = cursor + segment_size
                for _ in range(nsects):
                    if section_cursor + section_size > cursor + cmdsize:
                        logger.warning(f"Segment {segname} section list overruns its command")
                        break
                    raw_sectname, _, addr, size, offset, *rest = source.unpack(section_format, section_cursor)
                    section_cursor += section_size
                    flags = rest[3]
                    if flags & SECTION_TYPE_MASK in ZEROFILL_TYPES or offset == 0:
                        continue
                    section = clamp_section(_cstring(raw_sectname), base + offset, size, limit,
                                            virtual_address=addr, segment=segname)
                    if section is not None:
                        sections.append(section)

                # A segment without sections is searched as a whole
                if nsects == 0 and filesize:
                    section = clamp_section(segname, base + fileoff, filesize, limit,
                                            virtual_address=vmaddr, segment=segname)
                    if section is not None:
                        sections.append(section)

            cursor += cmdsize

        return sections, mapped_end

    def _load(self, source: ByteSource) -> Tuple[Slice, List[SectionDescriptor], int]:
        image = self.select_slice(source)
        try:
            sections, mapped_end = self._slice_sections(source, image)
        except TruncatedDataError as e:
            raise self._fail(f"Truncated load commands: {e.message}", "sections") from e
        if not sections:
            raise self._fail("Mach-O image has no section data", "sections", arch=image.arch_name)
        return image, sections, mapped_end

    def sections(self, source: ByteSource) -> List[SectionDescriptor]:
        """Enumerate file-backed sections of the selected slice.

        Raises:
            NoCandidateSectionError: corrupt headers, no matching slice, or no
                section data at all
        """
        _, sections, _ = self._load(source)
        return sections

    def data_sections(self, source: ByteSource) -> List[SectionDescriptor]:
        return [s for s in self.sections(source) if (s.segment, s.name) in READONLY_SECTIONS]

    def candidates(self, source: ByteSource) -> List[ByteRange]:
        image, sections, mapped_end = self._load(source)

        custom = [s for s in sections if s.segment not in CONVENTIONAL_SEGMENTS]
        readonly = [s for s in sections if (s.segment, s.name) in READONLY_SECTIONS]
        other = [s for s in sections if s not in custom and s not in readonly]
        logger.debug(f"Mach-O sections: {[s.qualified_name for s in sections]}")

        slice_end = image.offset + image.size
        mapped_end = max([mapped_end] + [s.end for s in sections])
        tail = ByteRange.clamp(mapped_end, slice_end - mapped_end, slice_end)
        return rank_candidates(source, custom, readonly, other, tail)

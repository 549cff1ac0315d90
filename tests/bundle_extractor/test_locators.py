"""Tests for PE, Mach-O and ELF candidate locators."""

import struct

import pytest
from webbundle_dump.bundle_extractor.archive import ARCHIVE_MAGIC
from webbundle_dump.bundle_extractor.byte_source import ByteSource
from webbundle_dump.bundle_extractor.errors import (
    LocatorUnreliableWarning,
    NoCandidateSectionError,
    UnsupportedContainerError,
)
from webbundle_dump.bundle_extractor.locators import (
    ELFLocator,
    MachOLocator,
    PELocator,
    locators_for,
)
from webbundle_dump.bundle_extractor.locators.macho import normalize_arch
from webbundle_dump.bundle_extractor.sniffer import ContainerKind

CPU_X86_64 = 0x01000007
CPU_ARM64 = 0x0100000C


def _by_name(sections):
    return {s.qualified_name: s for s in sections}


class TestLocatorsFor:
    """Tests for locator selection."""

    def test_each_kind_has_locator(self):
        assert isinstance(locators_for(ContainerKind.PE)[0], PELocator)
        assert isinstance(locators_for(ContainerKind.MACHO)[0], MachOLocator)
        assert isinstance(locators_for(ContainerKind.ELF)[0], ELFLocator)

    def test_arch_hint_reaches_macho_locator(self):
        locator = locators_for(ContainerKind.MACHO, arch_hint="aarch64")[0]
        assert locator.arch_hint == "arm64"

    def test_unknown_kind_raises(self):
        with pytest.raises(UnsupportedContainerError) as exc_info:
            locators_for(ContainerKind.UNKNOWN)
        assert exc_info.value.context["stage"] == "sniff"


class TestPELocator:
    """Tests for PE section enumeration and candidate ranking."""

    def test_sections_enumerated(self, pe_archive_builder, sample_archive, pe_address):
        source = ByteSource.from_bytes(pe_archive_builder(sample_archive))
        sections = _by_name(PELocator().sections(source))

        assert list(sections) == [".text", ".rdata", "RES"]
        assert sections[".rdata"].virtual_address == pe_address(1)
        for section in sections.values():
            assert section.end <= len(source)

    def test_custom_section_ranked_first(self, pe_archive_builder, sample_archive):
        """Test that a decoy magic in code does not outrank the custom section."""
        decoy = b"\x90" * 16 + ARCHIVE_MAGIC + b"\xff" * 32
        source = ByteSource.from_bytes(pe_archive_builder(sample_archive, text=decoy))
        locator = PELocator()
        res = _by_name(locator.sections(source))["RES"]

        candidates = locator.candidates(source)

        assert candidates[0].start == res.offset
        assert candidates[0].end == res.end
        text = _by_name(locator.sections(source))[".text"]
        assert any(text.offset <= c.start < text.end for c in candidates[1:])

    def test_overlay_candidate(self, pe_builder, sample_archive):
        """Test that an archive appended after the last section is found."""
        image = pe_builder([(".text", b"\xcc" * 64)], overlay=sample_archive)
        source = ByteSource.from_bytes(image)

        candidates = PELocator().candidates(source)

        assert len(candidates) == 1
        assert candidates[0].start == len(image) - len(sample_archive)
        assert candidates[0].end == len(image)

    def test_no_magic_yields_no_candidates(self, pe_builder):
        source = ByteSource.from_bytes(pe_builder([(".text", b"\xcc" * 64)]))
        assert PELocator().candidates(source) == []

    def test_data_sections(self, pe_archive_builder, sample_archive):
        source = ByteSource.from_bytes(pe_archive_builder(sample_archive))
        assert [s.name for s in PELocator().data_sections(source)] == [".rdata"]

    def test_bad_signature_raises(self, pe_builder):
        image = bytearray(pe_builder([(".text", b"\xcc")]))
        image[0x80:0x84] = b"NE\x00\x00"
        with pytest.raises(NoCandidateSectionError) as exc_info:
            PELocator().sections(ByteSource.from_bytes(bytes(image)))
        assert exc_info.value.context["container_kind"] == "pe"
        assert exc_info.value.context["stage"] == "headers"

    def test_truncated_headers_raise(self):
        with pytest.raises(NoCandidateSectionError):
            PELocator().sections(ByteSource.from_bytes(b"MZ" + b"\x00" * 30))

    def test_no_sections_raise(self, pe_builder):
        with pytest.raises(NoCandidateSectionError) as exc_info:
            PELocator().sections(ByteSource.from_bytes(pe_builder([])))
        assert exc_info.value.context["stage"] == "sections"

    def test_section_past_end_of_file_skipped(self, pe_builder):
        """Test that sections with raw data beyond the file are ignored."""
        image = pe_builder([(".text", b"\xcc" * 16), ("RES", b"x" * 16)])
        truncated = image[:0x600]
        sections = PELocator().sections(ByteSource.from_bytes(truncated))
        assert [s.name for s in sections] == [".text"]

    def test_mapped_file(self, write_binary, pe_archive_builder, sample_archive):
        """Test that sections are read from a memory-mapped file."""
        path = write_binary(pe_archive_builder(sample_archive))
        with ByteSource.open(path) as source:
            candidates = PELocator().candidates(source)
            assert source.startswith(ARCHIVE_MAGIC, candidates[0].start)


class TestMachOLocator:
    """Tests for thin and fat Mach-O handling."""

    def test_custom_segment_candidate(self, macho_builder, sample_archive):
        image = macho_builder([
            ("__TEXT", [("__text", b"\x1f\x20\x03\xd5" * 8), ("__const", b"consts")]),
            ("__WEBBUNDLE", [("__archive", sample_archive)]),
        ])
        source = ByteSource.from_bytes(image)
        locator = MachOLocator()
        archive_section = _by_name(locator.sections(source))["__WEBBUNDLE,__archive"]

        candidates = locator.candidates(source)

        assert candidates[0].start == archive_section.offset
        assert source.startswith(ARCHIVE_MAGIC, candidates[0].start)

    def test_data_sections(self, macho_builder):
        image = macho_builder([("__TEXT", [("__text", b"\x00" * 8), ("__const", b"c" * 8)])])
        sections = MachOLocator().data_sections(ByteSource.from_bytes(image))
        assert [s.qualified_name for s in sections] == ["__TEXT,__const"]

    def test_tail_candidate(self, macho_builder, sample_archive):
        image = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], tail=sample_archive)
        candidates = MachOLocator().candidates(ByteSource.from_bytes(image))
        assert [c.start for c in candidates] == [len(image) - len(sample_archive)]

    def test_fat_slices(self, macho_builder, fat_builder):
        x86 = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], cpu_type=CPU_X86_64, cpu_subtype=3)
        arm = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], cpu_type=CPU_ARM64)
        source = ByteSource.from_bytes(fat_builder([(CPU_X86_64, 3, x86), (CPU_ARM64, 0, arm)]))

        slices = MachOLocator().slices(source)

        assert [s.arch_name for s in slices] == ["x86_64", "arm64"]
        assert slices[1].offset == 0x1000 + len(x86) + (-len(x86) % 0x1000)

    def test_hint_selects_slice(self, macho_builder, fat_builder):
        x86 = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], cpu_type=CPU_X86_64)
        arm = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], cpu_type=CPU_ARM64)
        source = ByteSource.from_bytes(fat_builder([(CPU_X86_64, 3, x86), (CPU_ARM64, 0, arm)]))

        assert MachOLocator().select_slice(source).arch_name == "x86_64"
        assert MachOLocator("arm64").select_slice(source).arch_name == "arm64"
        assert MachOLocator("AArch64").select_slice(source).arch_name == "arm64"

    def test_arm64_hint_accepts_arm64e(self, macho_builder, fat_builder):
        arm64e = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], cpu_type=CPU_ARM64, cpu_subtype=2)
        source = ByteSource.from_bytes(fat_builder([(CPU_ARM64, 2, arm64e)]))
        assert MachOLocator("arm64").select_slice(source).arch_name == "arm64e"

    def test_missing_arch_raises(self, macho_builder, fat_builder):
        x86 = macho_builder([("__TEXT", [("__text", b"\x00" * 8)])], cpu_type=CPU_X86_64)
        source = ByteSource.from_bytes(fat_builder([(CPU_X86_64, 3, x86)]))

        with pytest.raises(NoCandidateSectionError) as exc_info:
            MachOLocator("ppc").sections(source)
        assert exc_info.value.context["available"] == ["x86_64"]
        assert exc_info.value.context["stage"] == "slice"

    def test_java_class_file_rejected(self):
        """Test that CAFEBABE with a class-file version is not taken as fat."""
        class_file = b"\xca\xfe\xba\xbe\x00\x00\x00\x34" + b"\x00" * 64
        with pytest.raises(NoCandidateSectionError):
            MachOLocator().slices(ByteSource.from_bytes(class_file))

    def test_truncated_header_raises(self):
        with pytest.raises(NoCandidateSectionError):
            MachOLocator().sections(ByteSource.from_bytes(b"\xcf\xfa\xed\xfe\x0c\x00"))

    def test_zerofill_sections_skipped(self, macho_builder):
        image = bytearray(macho_builder([("__DATA", [("__data", b"d" * 8), ("__bss", b"b" * 8)])]))
        # Mark the second section S_ZEROFILL; flags sit 64 bytes into the section header
        second_section = 32 + 72 + 80
        struct.pack_into("<I", image, second_section + 64, 0x1)
        sections = MachOLocator().sections(ByteSource.from_bytes(bytes(image)))
        assert [s.name for s in sections] == ["__data"]

    def test_normalize_arch(self):
        assert normalize_arch(" AMD64 ") == "x86_64"
        assert normalize_arch("x86") == "i386"
        assert normalize_arch("arm64") == "arm64"


class TestELFLocator:
    """Tests for the experimental ELF locator."""

    def test_emits_unreliable_warning(self, elf_builder):
        source = ByteSource.from_bytes(elf_builder([(".text", b"\x90" * 8)]))
        with pytest.warns(LocatorUnreliableWarning):
            ELFLocator().sections(source)

    def test_custom_section_candidate(self, elf_builder, sample_archive):
        image = elf_builder([
            (".text", b"\x90" * 32),
            (".rodata", b"strings\x00"),
            (".webbundle", sample_archive),
        ])
        source = ByteSource.from_bytes(image)
        locator = ELFLocator()

        with pytest.warns(LocatorUnreliableWarning):
            sections = _by_name(locator.sections(source))
            candidates = locator.candidates(source)

        assert ".shstrtab" in sections
        assert candidates[0].start == sections[".webbundle"].offset
        assert candidates[0].end == sections[".webbundle"].end

    def test_data_sections(self, elf_builder):
        source = ByteSource.from_bytes(elf_builder([(".text", b"\x90"), (".rodata", b"r" * 8)]))
        with pytest.warns(LocatorUnreliableWarning):
            assert [s.name for s in ELFLocator().data_sections(source)] == [".rodata"]

    def test_no_section_table_raises(self):
        header = b"\x7fELF" + bytes([2, 1, 1]) + b"\x00" * 57
        with pytest.warns(LocatorUnreliableWarning):
            with pytest.raises(NoCandidateSectionError) as exc_info:
                ELFLocator().sections(ByteSource.from_bytes(header))
        assert exc_info.value.context["container_kind"] == "elf"

    def test_truncated_header_raises(self):
        with pytest.warns(LocatorUnreliableWarning):
            with pytest.raises(NoCandidateSectionError):
                ELFLocator().sections(ByteSource.from_bytes(b"\x7fELF\x02\x01"))

    def test_truncated_section_table_raises(self, elf_builder):
        image = elf_builder([(".text", b"\x90" * 16), (".webbundle", b"x" * 32)])
        (shoff,) = struct.unpack_from("<Q", image, 0x28)
        with pytest.warns(LocatorUnreliableWarning):
            with pytest.raises(NoCandidateSectionError) as exc_info:
                ELFLocator().sections(ByteSource.from_bytes(image[:shoff + 100]))
        assert exc_info.value.context["container_kind"] == "elf"

    def test_mapped_file(self, write_binary, elf_builder, sample_archive):
        path = write_binary(elf_builder([(".webbundle", sample_archive)]))
        with ByteSource.open(path) as source:
            with pytest.warns(LocatorUnreliableWarning):
                candidates = ELFLocator().candidates(source)
            assert source.startswith(ARCHIVE_MAGIC, candidates[0].start)

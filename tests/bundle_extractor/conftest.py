"""Synthetic executable images for bundle extractor tests.

The builders lay out only the header fields the locators read; everything
else is zero.
"""

import struct
from typing import List, Optional, Sequence, Tuple

import brotli
import pytest

from webbundle_dump.bundle_extractor.archive import encode_archive

Section = Tuple[str, bytes]

PE_IMAGE_BASE = 0x140000000
PE_FILE_ALIGNMENT = 0x200
PE_HEADERS_SIZE = 0x400
PE_OFFSET = 0x80
PE_OPTIONAL_SIZE = 240

MACHO_VM_BASE = 0x100000000
CPU_X86_64 = 0x01000007
CPU_ARM64 = 0x0100000C


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def _pad(data: bytes, alignment: int) -> bytes:
    return data + b"\x00" * (_align(len(data), alignment) - len(data))


def build_pe(sections: Sequence[Section], overlay: bytes = b"") -> bytes:
    """PE32+ image with the given sections and optional appended overlay."""
    header = bytearray(PE_HEADERS_SIZE)
    header[0:2] = b"MZ"
    struct.pack_into("<I", header, 0x3C, PE_OFFSET)
    header[PE_OFFSET:PE_OFFSET + 4] = b"PE\x00\x00"
    struct.pack_into("<HHIIIHH", header, PE_OFFSET + 4,
                     0x8664, len(sections), 0, 0, 0, PE_OPTIONAL_SIZE, 0x22)
    optional = PE_OFFSET + 24
    struct.pack_into("<H", header, optional, 0x20B)
    struct.pack_into("<Q", header, optional + 24, PE_IMAGE_BASE)

    table = optional + PE_OPTIONAL_SIZE
    body = bytearray()
    for i, (name, data) in enumerate(sections):
        raw_offset = PE_HEADERS_SIZE + len(body)
        raw = _pad(data, PE_FILE_ALIGNMENT)
        struct.pack_into("<8sIIIIIIHHI", header, table + i * 40,
                         name.encode("ascii"), len(data), 0x1000 * (i + 1),
                         len(raw), raw_offset, 0, 0, 0, 0, 0x40000040)
        body += raw
    return bytes(header) + bytes(body) + overlay


def pe_section_address(index: int) -> int:
    """Virtual address of section ``index`` as laid out by build_pe."""
    return PE_IMAGE_BASE + 0x1000 * (index + 1)


def build_macho(segments: Sequence[Tuple[str, Sequence[Section]]],
                cpu_type: int = CPU_ARM64, cpu_subtype: int = 0,
                tail: bytes = b"") -> bytes:
    """Thin little-endian 64-bit Mach-O image."""
    commands_size = sum(72 + 80 * len(sects) for _, sects in segments)
    data_start = _align(32 + commands_size, 16)

    commands = bytearray()
    body = bytearray()
    for segname, sects in segments:
        fileoff = data_start + len(body)
        section_headers = bytearray()
        for sectname, data in sects:
            offset = data_start + len(body)
            section_headers += struct.pack(
                "<16s16sQQIIIIIIII",
                sectname.encode("ascii"), segname.encode("ascii"),
                MACHO_VM_BASE + offset, len(data), offset, 0, 0, 0, 0, 0, 0, 0,
            )
            body += _pad(data, 16)
        filesize = data_start + len(body) - fileoff
        commands += struct.pack(
            "<II16sQQQQiiII",
            0x19, 72 + len(section_headers), segname.encode("ascii"),
            MACHO_VM_BASE + fileoff, filesize, fileoff, filesize, 5, 5, len(sects), 0,
        )
        commands += section_headers

    header = struct.pack("<IiiIIIII", 0xFEEDFACF, cpu_type, cpu_subtype, 2,
                         len(segments), commands_size, 0, 0)
    image = header + bytes(commands)
    return image + b"\x00" * (data_start - len(image)) + bytes(body) + tail


def build_fat(slices: Sequence[Tuple[int, int, bytes]], alignment: int = 0x1000) -> bytes:
    """Fat Mach-O from (cpu_type, cpu_subtype, thin image) triples."""
    header = struct.pack(">II", 0xCAFEBABE, len(slices))
    offset = alignment
    entries = bytearray()
    body = bytearray()
    for cpu_type, cpu_subtype, image in slices:
        entries += struct.pack(">iiIII", cpu_type, cpu_subtype, offset, len(image), 12)
        padded = _pad(image, alignment)
        body += padded
        offset += len(padded)
    head = header + bytes(entries)
    return head + b"\x00" * (alignment - len(head)) + bytes(body)


def build_elf(sections: Sequence[Section], tail: bytes = b"") -> bytes:
    """ELF64 little-endian image with PROGBITS sections and a name table."""
    names = bytearray(b"\x00")
    name_offsets = []
    for name, _ in list(sections) + [(".shstrtab", b"")]:
        name_offsets.append(len(names))
        names += name.encode("ascii") + b"\x00"

    body = bytearray()
    layout = []
    for name, data in sections:
        layout.append((64 + len(body), len(data)))
        body += _pad(data, 16)
    strtab_offset = 64 + len(body)
    body += _pad(bytes(names), 16)
    shoff = 64 + len(body)

    shnum = len(sections) + 2
    headers = bytearray(64)  # null section
    for i, (offset, size) in enumerate(layout):
        headers += struct.pack("<IIQQQQIIQQ", name_offsets[i], 1, 2,
                               0x400000 + offset, offset, size, 0, 0, 16, 0)
    headers += struct.pack("<IIQQQQIIQQ", name_offsets[-1], 3, 0, 0,
                           strtab_offset, len(names), 0, 0, 1, 0)

    ident = b"\x7fELF" + bytes([2, 1, 1]) + b"\x00" * 9
    header = ident + struct.pack("<HHIQQQIHHHHHH", 2, 0x3E, 1, 0, 0, shoff, 0,
                                 64, 0, 0, 64, shnum, shnum - 1)
    return header + bytes(body) + bytes(headers) + tail


SAMPLE_FILES: List[Tuple[str, bytes]] = [
    ("index.html", b"<p>hello</p>"),
    ("assets/app.js", bytes(range(256)) * 16),
]


@pytest.fixture
def sample_files() -> List[Tuple[str, bytes]]:
    """The index.html / assets/app.js pair used across scenarios."""
    return list(SAMPLE_FILES)


@pytest.fixture
def sample_archive(sample_files) -> bytes:
    return encode_archive(sample_files)


@pytest.fixture
def write_binary(tmp_path):
    """Write image bytes to a file under tmp_path and return its path."""
    def _write(data: bytes, name: str = "app.bin"):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _write


@pytest.fixture
def pe_builder():
    return build_pe


@pytest.fixture
def macho_builder():
    return build_macho


@pytest.fixture
def fat_builder():
    return build_fat


@pytest.fixture
def elf_builder():
    return build_elf


def pe_with_archive(archive: bytes, section: str = "RES",
                    text: Optional[bytes] = None) -> bytes:
    """PE carrying ``archive`` in its own custom section."""
    return build_pe([
        (".text", text if text is not None else b"\xcc" * 64),
        (".rdata", b"static strings\x00"),
        (section, archive),
    ])


@pytest.fixture
def pe_archive_builder():
    return pe_with_archive


@pytest.fixture
def pe_address():
    """Virtual address of a build_pe section by index."""
    return pe_section_address


def build_asset_rdata(base_address: int, assets: Sequence[Section], lead: int = 8,
                      compress: bool = True) -> bytes:
    """Read-only data holding an asset table followed by names and payloads.

    With ``compress`` off the contents are stored as given, already Brotli.
    """
    blobs = bytearray()
    records = bytearray()
    blob_base = lead + 32 * len(assets)
    for name, content in assets:
        encoded = name.encode("ascii")
        compressed = brotli.compress(content) if compress else content
        name_at = blob_base + len(blobs)
        blobs += encoded
        data_at = blob_base + len(blobs)
        blobs += compressed
        records += struct.pack("<QQQQ", base_address + name_at, len(encoded),
                               base_address + data_at, len(compressed))
    return b"\x00" * lead + bytes(records) + bytes(blobs)


@pytest.fixture
def pe_asset_builder():
    """PE whose .rdata carries an asset table instead of an archive."""
    def _build(assets: Sequence[Section], compress: bool = True) -> bytes:
        rdata = build_asset_rdata(pe_section_address(1), assets, compress=compress)
        return build_pe([(".text", b"\xcc" * 16), (".rdata", rdata)])
    return _build


BOMB_SIZE = 32 * 1024 * 1024


@pytest.fixture(scope="session")
def brotli_bomb() -> bytes:
    """A few hundred bytes of Brotli that expand to 32 MiB of zeros."""
    return brotli.compress(b"\x00" * BOMB_SIZE, quality=5)

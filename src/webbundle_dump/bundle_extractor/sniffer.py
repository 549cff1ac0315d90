"""Container format detection from magic numbers."""

from enum import Enum

from .byte_source import ByteSource

SNIFF_LENGTH = 64

MZ_MAGIC = b"MZ"
ELF_MAGIC = b"\x7fELF"
MACHO_MAGICS = (
    b"\xfe\xed\xfa\xce",  # 32-bit, big-endian
    b"\xfe\xed\xfa\xcf",  # 64-bit, big-endian
    b"\xce\xfa\xed\xfe",  # 32-bit, little-endian
    b"\xcf\xfa\xed\xfe",  # 64-bit, little-endian
)
FAT_MAGICS = (
    b"\xca\xfe\xba\xbe",
    b"\xca\xfe\xba\xbf",  # 64-bit fat header
)


class ContainerKind(Enum):
    """Native executable container formats."""
    PE = "pe"
    MACHO = "macho"
    ELF = "elf"
    UNKNOWN = "unknown"


def sniff_bytes(prefix: bytes) -> ContainerKind:
    """Classify a leading byte prefix. Total: never raises."""
    if prefix.startswith(MZ_MAGIC):
        return ContainerKind.PE
    magic = prefix[:4]
    if magic in MACHO_MAGICS or magic in FAT_MAGICS:
        return ContainerKind.MACHO
    if magic == ELF_MAGIC:
        return ContainerKind.ELF
    return ContainerKind.UNKNOWN


def sniff(source: ByteSource) -> ContainerKind:
    """Classify the container held by ``source`` from its first bytes."""
    return sniff_bytes(source.head(SNIFF_LENGTH))

"""Container-specific archive locators, selected by sniffed container kind."""

from typing import List, Optional

from ..errors import UnsupportedContainerError
from ..sniffer import ContainerKind
from .base import Locator, SectionDescriptor
from .elf import ELFLocator
from .macho import MachOLocator
from .pe import PELocator


def locators_for(kind: ContainerKind, arch_hint: Optional[str] = None) -> List[Locator]:
    """Locators to try, in order, for a container kind.

    Raises:
        UnsupportedContainerError: no locator handles ``kind``
    """
    if kind is ContainerKind.PE:
        return [PELocator()]
    if kind is ContainerKind.MACHO:
        return [MachOLocator(arch_hint=arch_hint)]
    if kind is ContainerKind.ELF:
        return [ELFLocator()]
    raise UnsupportedContainerError(
        f"No locator for container kind {kind.value!r}",
        container_kind=kind.value,
        stage="sniff",
    )


__all__ = [
    'Locator',
    'SectionDescriptor',
    'PELocator',
    'MachOLocator',
    'ELFLocator',
    'locators_for',
]

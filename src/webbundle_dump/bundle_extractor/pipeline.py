"""End-to-end extraction: sniff, locate, decode, write."""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from webbundle_dump.common import FileProcessingError, LogContext, PermissionDeniedError
from .archive import DEFAULT_MAX_ENTRY_SIZE, ArchiveDecoder, DecodedArchive
from .asset_table import AssetTable, AssetTableScanner
from .byte_source import ByteRange, ByteSource
from .errors import ArchiveNotFoundError, NoCandidateSectionError, UnsupportedContainerError
from .locators import Locator, locators_for
from .sniffer import ContainerKind, sniff
from .writer import ExtractionSummary, ExtractionWriter

logger = logging.getLogger(__name__)

PLATFORM_KINDS = {
    "windows": ContainerKind.PE,
    "macos": ContainerKind.MACHO,
    "linux": ContainerKind.ELF,
}
PLATFORMS = ("auto",) + tuple(PLATFORM_KINDS)


class BundleExtractor:
    """Extracts the embedded web-app archive of one executable.

    Args:
        input_path: Executable to read
        output_dir: Directory to write entries into; created only once an
            archive has been decoded
        arch_hint: Slice to use for fat Mach-O files
        platform: ``auto`` or the platform the executable must target
        asset_table_fallback: Scan read-only data for an asset table when no
            archive header is found
        max_entry_size: Largest decompressed entry accepted, in bytes
        verify_written: Re-read each written file and compare its CRC32
        write_workers: Number of writer threads
    """

    def __init__(
        self,
        input_path: Path,
        output_dir: Path,
        arch_hint: Optional[str] = None,
        platform: str = "auto",
        asset_table_fallback: bool = False,
        max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE,
        verify_written: bool = False,
        write_workers: int = 1,
    ):
        if platform not in PLATFORMS:
            raise ValueError(f"Unknown platform {platform!r}, expected one of {PLATFORMS}")
        self.input_path = Path(input_path)
        self.output_dir = Path(output_dir)
        self.arch_hint = arch_hint
        self.platform = platform
        self.asset_table_fallback = asset_table_fallback
        self.max_entry_size = max_entry_size
        self.verify_written = verify_written
        self.write_workers = write_workers

    def _open_source(self) -> ByteSource:
        try:
            return ByteSource.open(self.input_path)
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Permission denied reading {self.input_path}",
                path=str(self.input_path), stage="open",
            ) from e
        except OSError as e:
            raise FileProcessingError(
                f"Cannot read {self.input_path}: {e}",
                path=str(self.input_path), stage="open",
            ) from e

    def _sniff(self, source: ByteSource) -> ContainerKind:
        kind = sniff(source)
        logger.info(f"Detected container: {kind.value}")
        if kind is ContainerKind.UNKNOWN:
            raise UnsupportedContainerError(
                f"{self.input_path} is not a PE, Mach-O or ELF executable",
                container_kind=kind.value, stage="sniff",
            )

        expected = PLATFORM_KINDS.get(self.platform)
        if expected is not None and kind is not expected:
            raise UnsupportedContainerError(
                f"Platform {self.platform!r} expects {expected.value}, found {kind.value}",
                container_kind=kind.value, stage="sniff",
            )
        return kind

    def _locate(self, source: ByteSource, kind: ContainerKind) -> Tuple[Locator, List[ByteRange]]:
        """First locator that can enumerate sections, with its candidates."""
        last_error: Optional[NoCandidateSectionError] = None
        for locator in locators_for(kind, arch_hint=self.arch_hint):
            try:
                candidates = locator.candidates(source)
            except NoCandidateSectionError as e:
                logger.warning(f"{type(locator).__name__} found nothing to search: {e.message}")
                last_error = e
                continue
            logger.info(f"{len(candidates)} candidate range(s) from {type(locator).__name__}")
            return locator, candidates
        raise last_error

    def _decode(self, source: ByteSource, kind: ContainerKind) -> Union[DecodedArchive, AssetTable]:
        locator, candidates = self._locate(source, kind)
        decoder = ArchiveDecoder(source, max_entry_size=self.max_entry_size)
        try:
            return decoder.decode(candidates)
        except ArchiveNotFoundError as e:
            e.context.setdefault("container_kind", kind.value)
            if not self.asset_table_fallback:
                raise
            logger.info(f"{e.message}; scanning for an asset table")
            table = AssetTableScanner(source, self.max_entry_size).scan(locator.data_sections(source))
            if not len(table):
                raise
            logger.info(f"Asset table found with {len(table)} entries")
            return table

    def run(self, progress_callback: Optional[Callable[[int, int, str], None]] = None) -> ExtractionSummary:
        """Extract every entry to the output directory.

        Args:
            progress_callback: Optional callback(current, total, path)

        Returns:
            Per-entry outcomes; ``status`` is ``partial`` if any entry failed

        Raises:
            FileProcessingError: the input could not be read
            ContainerError: the container is unsupported or has nothing to search
            ArchiveNotFoundError: no archive or asset table was found
        """
        with LogContext(logger, input=str(self.input_path)):
            logger.info(f"Extracting {self.input_path} -> {self.output_dir}")
            with self._open_source() as source:
                kind = self._sniff(source)
                archive = self._decode(source, kind)

                writer = ExtractionWriter(
                    self.output_dir,
                    verify_written=self.verify_written,
                    workers=self.write_workers,
                )
                summary = writer.write_all(archive, progress_callback, total=len(archive))

            logger.info(
                f"Extraction {summary.status}: {len(summary.succeeded)}/{len(summary.results)} "
                f"entries, {summary.bytes_written} bytes"
            )
            for path in summary.failed_paths:
                logger.warning(f"Not extracted: {path}")
            return summary

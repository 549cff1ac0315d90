"""Materializes decoded entries under an output root."""

import logging
import os
import stat
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from webbundle_dump.common import compute_crc32, compute_crc32_bytes
from .archive import DecodedEntry
from .errors import EntryError, WriteFailureError, classify_error

logger = logging.getLogger(__name__)

_OPEN_FLAGS = (os.O_WRONLY | os.O_CREAT | os.O_TRUNC
               | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_BINARY", 0))


@dataclass
class EntryResult:
    """Outcome for one archive entry."""
    path: str
    bytes_written: int = 0
    success: bool = False
    error: Optional[str] = None
    error_category: Optional[str] = None
    crc32: Optional[int] = None

    @classmethod
    def failed(cls, path: str, exc: Exception) -> 'EntryResult':
        message = exc.message if isinstance(exc, EntryError) else str(exc)
        return cls(path=path, error=message, error_category=classify_error(exc))


@dataclass
class ExtractionSummary:
    """Aggregated per-entry outcomes of one run."""
    output_dir: Path
    results: List[EntryResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[EntryResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[EntryResult]:
        return [r for r in self.results if not r.success]

    @property
    def failed_paths(self) -> List[str]:
        return [r.path for r in self.failed]

    @property
    def bytes_written(self) -> int:
        return sum(r.bytes_written for r in self.succeeded)

    @property
    def status(self) -> str:
        return "partial" if self.failed else "success"

    def to_dict(self) -> Dict[str, Any]:
        categories: Dict[str, int] = {}
        for result in self.failed:
            categories[result.error_category] = categories.get(result.error_category, 0) + 1
        return {
            'status': self.status,
            'output_dir': str(self.output_dir),
            'total': len(self.results),
            'succeeded': len(self.succeeded),
            'failed': len(self.failed),
            'bytes_written': self.bytes_written,
            'failed_paths': self.failed_paths,
            'errors_by_category': categories,
        }


class ExtractionWriter:
    """Writes entries as regular files below ``output_root``.

    Symbolic links are never followed or overwritten, and every target must
    resolve inside the root.
    """

    def __init__(self, output_root: Path, verify_written: bool = False, workers: int = 1) -> None:
        self.output_root = Path(output_root)
        self.verify_written = verify_written
        self.workers = max(1, workers)

    def _target_for(self, relative_path: str) -> Path:
        root = self.output_root.resolve()
        target = root.joinpath(*relative_path.split("/"))

        # Walk each parent so a planted symlink cannot redirect the write
        current = root
        for part in relative_path.split("/")[:-1]:
            current = current / part
            if current.is_symlink():
                raise WriteFailureError(f"Refusing to write through symlink {current}", path=relative_path)
            current.mkdir(exist_ok=True)
            if not current.is_dir():
                raise WriteFailureError(f"Parent {current} is not a directory", path=relative_path)

        if not target.resolve().is_relative_to(root):
            raise WriteFailureError(f"Target escapes output root: {target}", path=relative_path)
        if target.is_symlink():
            raise WriteFailureError(f"Refusing to overwrite symlink {target}", path=relative_path)
        if target.exists() and not stat.S_ISREG(target.lstat().st_mode):
            raise WriteFailureError(f"Refusing to replace non-regular file {target}", path=relative_path)
        return target

    def write(self, relative_path: str, content: bytes) -> EntryResult:
        """Write one entry.

        Raises:
            WriteFailureError: the file could not be written safely
        """
        try:
            target = self._target_for(relative_path)
            fd = os.open(target, _OPEN_FLAGS, 0o644)
            with os.fdopen(fd, "wb") as f:
                f.write(content)
        except WriteFailureError:
            raise
        except OSError as e:
            raise WriteFailureError(f"Failed to write {relative_path}: {e}", path=relative_path) from e

        crc = compute_crc32_bytes(content)
        if self.verify_written:
            try:
                on_disk = compute_crc32(target)
            except OSError as e:
                raise WriteFailureError(f"Failed to verify {relative_path}: {e}", path=relative_path) from e
            if on_disk != crc:
                raise WriteFailureError(
                    f"Checksum mismatch for {relative_path}: {on_disk:08x} != {crc:08x}",
                    path=relative_path,
                )

        return EntryResult(path=relative_path, bytes_written=len(content), success=True, crc32=crc)

    def _write_entry(self, entry: DecodedEntry) -> EntryResult:
        if not entry.ok:
            logger.warning(f"Skipping entry {entry.path!r}: {entry.error.message}")
            return EntryResult.failed(entry.path, entry.error)
        try:
            result = self.write(entry.path, entry.content)
        except WriteFailureError as e:
            logger.error(f"Write failed for {entry.path!r}: {e.message}")
            return EntryResult.failed(entry.path, e)
        logger.debug(f"Wrote {entry.path} ({result.bytes_written} bytes)")
        return result

    def write_all(
        self,
        entries: Iterable[DecodedEntry],
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
        total: int = 0,
    ) -> ExtractionSummary:
        """Write every entry, recording failures instead of stopping.

        Args:
            entries: Decoded entries, consumed once
            progress_callback: Optional callback(current, total, path), 1-based
            total: Entry count reported to the callback

        Returns:
            Summary of all per-entry outcomes
        """
        self.output_root.mkdir(parents=True, exist_ok=True)
        summary = ExtractionSummary(output_dir=self.output_root)

        def record(result: EntryResult) -> None:
            summary.results.append(result)
            if progress_callback:
                progress_callback(len(summary.results), total, result.path)

        if self.workers == 1:
            for entry in entries:
                record(self._write_entry(entry))
            return summary

        # Bounded window keeps at most a few payloads per worker in memory
        window = self.workers * 4
        pending: List[Future] = []
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            for entry in entries:
                pending.append(executor.submit(self._write_entry, entry))
                if len(pending) >= window:
                    record(pending.pop(0).result())
            for future in pending:
                record(future.result())
        return summary

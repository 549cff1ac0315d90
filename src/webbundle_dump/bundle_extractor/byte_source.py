"""Read-only random access over the bytes of an input file."""

import io
import logging
import mmap
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Tuple, Union

from webbundle_dump.common import TruncatedDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByteRange:
    """A window into a ByteSource. Holds offsets only, never data."""
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length

    @classmethod
    def clamp(cls, start: int, length: int, total: int) -> Optional['ByteRange']:
        """Build a range limited to ``total`` bytes.

        Returns None when nothing of the requested window lies inside the
        source.
        """
        if start < 0 or length <= 0 or start >= total:
            return None
        return cls(start, min(length, total - start))

    def __str__(self) -> str:
        return f"[0x{self.start:x}, 0x{self.end:x})"


class ByteSource:
    """Read-only view over file bytes, memory-mapped when possible.

    Every accessor is bounds-checked and raises ``TruncatedDataError``
    instead of returning short data.
    """

    def __init__(self, data: Union[bytes, mmap.mmap], name: str = "<memory>", _file=None) -> None:
        self._data = data
        self._file = _file
        self.name = name

    @classmethod
    def open(cls, path: Path) -> 'ByteSource':
        """Memory-map ``path`` read-only.

        Empty files cannot be mapped and are buffered instead.
        """
        path = Path(path)
        f = open(path, 'rb')
        try:
            size = path.stat().st_size
            if size == 0:
                data = f.read()
                f.close()
                return cls(data, name=str(path))
            mapped = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
        except BaseException:
            f.close()
            raise
        logger.debug(f"Mapped {path} ({size} bytes)")
        return cls(mapped, name=str(path), _file=f)

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "<memory>") -> 'ByteSource':
        return cls(bytes(data), name=name)

    def close(self) -> None:
        if isinstance(self._data, mmap.mmap) and not self._data.closed:
            self._data.close()
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> 'ByteSource':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._data)

    @property
    def buffer(self) -> Union[bytes, mmap.mmap]:
        """The underlying bytes, for parsers that take a buffer."""
        return self._data

    def stream(self) -> BinaryIO:
        """A seekable file object over the bytes, for parsers that read streams.

        A mapped source hands out its map, so only one stream is in use at a time.
        """
        if isinstance(self._data, mmap.mmap):
            self._data.seek(0)
            return self._data
        return io.BytesIO(self._data)

    def _check(self, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > len(self._data):
            raise TruncatedDataError(
                f"Read of {length} bytes at 0x{offset:x} exceeds source size 0x{len(self._data):x}",
                source=self.name,
                offset=offset,
                length=length,
            )

    def read(self, offset: int, length: int) -> bytes:
        self._check(offset, length)
        return bytes(self._data[offset:offset + length])

    def read_range(self, byte_range: ByteRange) -> bytes:
        return self.read(byte_range.start, byte_range.length)

    def head(self, length: int) -> bytes:
        """Up to ``length`` leading bytes; shorter for small sources."""
        return bytes(self._data[:max(length, 0)])

    def unpack(self, fmt: str, offset: int) -> Tuple:
        self._check(offset, struct.calcsize(fmt))
        return struct.unpack_from(fmt, self._data, offset)

    def find(self, needle: bytes, start: int = 0, end: Optional[int] = None) -> int:
        """Offset of ``needle`` within ``[start, end)``, or -1."""
        if end is None:
            end = len(self._data)
        return self._data.find(needle, start, end)

    def startswith(self, needle: bytes, offset: int) -> bool:
        if offset < 0 or offset + len(needle) > len(self._data):
            return False
        return self._data[offset:offset + len(needle)] == needle

"""
Module providing read-only byte sources for files selected for upload.
"""
import logging
from pathlib import Path
from typing import AsyncIterator

import aiofiles

logger = logging.getLogger(__name__)


class ByteSource:
    """Read-only, sliceable access to the content of one file.

    Subclasses implement ``read``; ``iter_chunks`` may be overridden when the
    backing store can stream more efficiently.
    """

    name: str = ""
    size: int = 0

    async def read(self, offset: int, length: int) -> bytes:
        raise NotImplementedError

    async def iter_chunks(self, chunk_size: int, start: int = 0) -> AsyncIterator[bytes]:
        """Yield the bytes in ``[start, size)`` in order, ``chunk_size`` at a time."""
        position = start
        while position < self.size:
            chunk = await self.read(position, min(chunk_size, self.size - position))
            if not chunk:
                raise OSError(f"Unexpected end of {self.name} at byte {position}")
            position += len(chunk)
            yield chunk


class FileSource(ByteSource):
    """A file on local disk, read with aiofiles."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size

    async def read(self, offset: int, length: int) -> bytes:
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(offset)
            return await f.read(length)

    async def iter_chunks(self, chunk_size: int, start: int = 0) -> AsyncIterator[bytes]:
        position = start
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(start)
            while position < self.size:
                chunk = await f.read(min(chunk_size, self.size - position))
                if not chunk:
                    raise OSError(f"Unexpected end of {self.path} at byte {position}")
                position += len(chunk)
                yield chunk

    def __repr__(self) -> str:
        return f"FileSource({str(self.path)!r}, size={self.size})"


class MemorySource(ByteSource):
    """Bytes held in memory."""

    def __init__(self, data: bytes, name: str):
        self._data = bytes(data)
        self.name = name
        self.size = len(self._data)

    async def read(self, offset: int, length: int) -> bytes:
        return self._data[offset:offset + length]

    def __repr__(self) -> str:
        return f"MemorySource({self.name!r}, size={self.size})"

"""
Streaming ZIP writer.

zipstream-ng generates the archive lazily, one queued entry at a time, and
every generated chunk is moved into a bounded queue. The HTTP response
drains the queue, so the archive is never held in memory or on disk as a
whole, and a slow client slows the writers down.
"""

import asyncio
import zipfile
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional, Set

import structlog
from zipstream import ZipStream

from ytmp3.config import settings
from ytmp3.errors import ArchiveFailure

logger = structlog.get_logger()

QUEUE_DEPTH = 16


class ZipStreamWriter:
    """
    Incremental ZIP archive.

    Only one entry can be written at a time; callers serialize add_file.

    Example:
        >>> writer = ZipStreamWriter()
        >>> await writer.add_file("song.mp3", Path("/tmp/song.mp3"))
        >>> await writer.close()
        >>> async for chunk in writer.chunks():
        ...     response.write(chunk)
    """

    def __init__(self, compression_level: Optional[int] = None, queue_depth: int = QUEUE_DEPTH):
        level = settings.ZIP_COMPRESSION_LEVEL if compression_level is None else compression_level
        try:
            self._zip = ZipStream(compress_type=zipfile.ZIP_DEFLATED, compress_level=level)
        except (ValueError, RuntimeError) as e:
            raise ArchiveFailure(f"Error creating ZIP: {e}")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_depth)
        self._names: Set[str] = set()
        self.closed = False
        self.entries = 0

    def unique_name(self, name: str) -> str:
        """Return ``name``, or ``name (n).ext`` if it is already in the archive."""
        if name not in self._names:
            self._names.add(name)
            return name
        path = Path(name)
        counter = 2
        while True:
            candidate = f"{path.stem} ({counter}){path.suffix}"
            if candidate not in self._names:
                self._names.add(candidate)
                return candidate
            counter += 1

    async def _pump(self, data: Iterator[bytes]) -> None:
        """Queue everything ``data`` generates; compression runs in a worker thread."""
        while True:
            chunk = await asyncio.to_thread(next, data, None)
            if chunk is None:
                break
            if chunk:
                await self._queue.put(chunk)

    async def add_file(self, name: str, path: Path) -> str:
        """
        Append a file from disk.

        Returns:
            The name used inside the archive

        Raises:
            ArchiveFailure: The archive is closed or the write failed
        """
        if self.closed:
            raise ArchiveFailure("Archive already finalized")

        arcname = self.unique_name(name)
        try:
            self._zip.add_path(str(path), arcname)
            await self._pump(self._zip.all_files())
        except (OSError, ValueError, RuntimeError, zipfile.LargeZipFile) as e:
            raise ArchiveFailure(f"Error adding {arcname} to ZIP: {e}")

        self.entries += 1
        return arcname

    async def close(self) -> None:
        """Write the central directory and end the chunk stream."""
        if self.closed:
            return
        self.closed = True
        try:
            await self._pump(self._zip.finalize())
        except (OSError, ValueError, RuntimeError) as e:
            raise ArchiveFailure(f"Error finalizing ZIP: {e}")
        logger.debug("zip_finalized", entries=self.entries)
        await self._queue.put(None)

    def abort(self) -> None:
        """Stop the chunk stream without finalizing; pending chunks are dropped."""
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk

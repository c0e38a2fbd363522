"""
Playlist Orchestrator

Lists a playlist with yt-dlp in flat mode, then runs a fixed pool of
workers that each take the next entry, download it through the
single-item path and append the MP3 to a streaming ZIP archive.

Archive entries appear in the order the workers finish, not playlist
order. A failed entry is counted and skipped; the archive is finalized
once the queue is empty and no worker is busy.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from starlette.requests import Request

from ytmp3.config import settings
from ytmp3.errors import (
    ArchiveFailure,
    ClientDisconnected,
    DownloadError,
    ErrorCode,
    ExtractionFailure,
    ValidationError,
)
from ytmp3.services.fallback_extractor import FallbackExtractor
from ytmp3.services.models import PlaylistEntry
from ytmp3.services.request_guard import cancel_task, stop_watcher, watch_disconnect
from ytmp3.services.session import DownloadSession
from ytmp3.services.single_download import SingleItemDownloader
from ytmp3.services.zip_stream import ZipStreamWriter

logger = structlog.get_logger()

EMPTY_PLAYLIST_MESSAGE = "Playlist is empty or unavailable."


def parse_playlist_output(raw_output: str) -> Dict[str, Any]:
    """
    Parse yt-dlp playlist output into ``{"entries": [...]}``.

    Accepts a single document (object with ``entries``, a list, or a lone
    entry) or several JSON objects printed back to back. The second form is
    split by counting braces, which misparses titles containing literal
    ``{`` or ``}``; it is only tried when the single-document parse fails.

    Raises:
        ValueError: Empty output or no JSON object found
    """
    clean_output = (raw_output or "").strip()
    if not clean_output:
        raise ValueError("Empty output from yt-dlp")

    try:
        data = json.loads(clean_output)
    except ValueError:
        pass
    else:
        if isinstance(data, dict) and isinstance(data.get("entries"), list):
            return data
        return {"entries": data if isinstance(data, list) else [data]}

    objects = []
    depth = 0
    start = -1
    for i, ch in enumerate(clean_output):
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0 and start != -1:
                try:
                    objects.append(json.loads(clean_output[start:i + 1]))
                except ValueError:
                    logger.debug("playlist_chunk_unparsed", offset=start)
                start = -1

    if len(objects) == 1 and isinstance(objects[0], dict) and isinstance(objects[0].get("entries"), list):
        return objects[0]
    if objects:
        return {"entries": objects}

    raise ValueError("No valid JSON found in yt-dlp output")


def try_parse_playlist_output(output: str) -> Optional[Dict[str, Any]]:
    """parse_playlist_output after dropping anything before the first ``{``."""
    clean_output = (output or "").strip()
    json_start = clean_output.find("{")
    if json_start > 0:
        clean_output = clean_output[json_start:]
    try:
        return parse_playlist_output(clean_output)
    except ValueError:
        return None


def entries_from_listing(data: Dict[str, Any], limit: int) -> List[PlaylistEntry]:
    """The first ``limit`` listed items, minus those without a video id."""
    entries = []
    for item in (data.get("entries") or [])[:limit]:
        entry = PlaylistEntry.from_dict(item)
        if entry is not None:
            entries.append(entry)
    return entries


class PlaylistArchiveJob:
    """
    Worker pool feeding one streaming ZIP archive.

    Lifecycle: prime() -> body() consumed by the response -> shutdown().
    """

    def __init__(
        self,
        entries: List[PlaylistEntry],
        downloader: SingleItemDownloader,
        session: DownloadSession,
        concurrency: int,
        compression_level: Optional[int] = None,
        request: Optional[Request] = None,
    ):
        self.entries = entries
        self.downloader = downloader
        self.session = session
        self.concurrency = concurrency
        self.request = request
        self.writer = ZipStreamWriter(compression_level=compression_level)

        self.queue: asyncio.Queue = asyncio.Queue()
        for index, entry in enumerate(entries):
            self.queue.put_nowait((index, entry))

        self.files_added = 0
        self.files_error = 0
        self.in_flight = 0
        self.finished = False
        self.aborted = False
        self.error: Optional[DownloadError] = None
        self._write_lock = asyncio.Lock()
        self._workers: List[asyncio.Task] = []
        self._watcher: Optional[asyncio.Task] = None
        self._stop_watching = asyncio.Event()
        self._stream: Optional[AsyncIterator[bytes]] = None
        self._first = b""
        self.logger = session.logger.bind(service="playlist_archive", total=len(entries))

    def start(self) -> None:
        if self._workers:
            return
        self.logger.info("playlist_archive_started", concurrency=self.concurrency)
        for slot in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(slot)))
        if self.request is not None:
            self._watcher = asyncio.create_task(self._watch_disconnect())
        # an empty queue has nothing to wait for
        if self.queue.empty():
            self._workers.append(asyncio.create_task(self._maybe_finalize()))

    async def _watch_disconnect(self) -> None:
        if await watch_disconnect(self.request, self.session, stop=self._stop_watching):
            await self.abort("client_disconnected")

    async def _worker(self, slot: int) -> None:
        while not self.session.cancelled.is_set() and not self.aborted:
            try:
                index, entry = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break

            self.in_flight += 1
            try:
                await self._process(index, entry)
            except ClientDisconnected:
                break
            finally:
                self.in_flight -= 1
            await self._maybe_finalize()

    async def _process(self, index: int, entry: PlaylistEntry) -> None:
        position = f"{index + 1}/{len(self.entries)}"
        self.logger.info("playlist_entry_started", position=position, title=entry.title)

        try:
            result = await self.downloader.download(entry.watch_url, self.session)
        except ClientDisconnected:
            raise
        except DownloadError as e:
            self.files_error += 1
            self.logger.warning("playlist_entry_failed", position=position, error=e.message)
            return
        except Exception as e:
            self.files_error += 1
            self.logger.error("playlist_entry_failed", position=position, error=str(e), exc_info=True)
            return

        try:
            async with self._write_lock:
                arcname = await self.writer.add_file(result.filename, result.path)
        except ArchiveFailure as e:
            self.error = e
            self.logger.error("playlist_archive_failed", error=e.message)
            await self.abort("archive_error")
            return
        finally:
            if result.temp_file is not None:
                self.session.release_temp_file(result.temp_file)

        self.files_added += 1
        self.logger.info("playlist_entry_added", position=position, name=arcname)

    async def _maybe_finalize(self) -> None:
        """Close the archive if this was the last worker with the last entry."""
        if self.finished or self.aborted:
            return
        if not self.queue.empty() or self.in_flight > 0:
            return
        self.finished = True
        try:
            async with self._write_lock:
                await self.writer.close()
        except ArchiveFailure as e:
            self.error = e
            self.logger.error("playlist_archive_failed", error=e.message)
            await self.abort("archive_error")
            return
        self.logger.info(
            "playlist_archive_finalized",
            files_added=self.files_added,
            files_error=self.files_error,
        )

    async def abort(self, reason: str) -> None:
        """Stop scheduling, cancel workers, kill processes, end the stream."""
        if self.aborted:
            return
        self.aborted = True
        self.logger.warning("playlist_archive_aborted", reason=reason)
        await self.session.cancel(reason)
        self.writer.abort()

        current = asyncio.current_task()
        for task in self._workers:
            if task is not current:
                await cancel_task(task)

    async def chunks(self) -> AsyncIterator[bytes]:
        async for chunk in self.writer.chunks():
            yield chunk
        # an aborted archive must not look like a complete download
        if self.error is not None:
            raise self.error

    async def prime(self) -> None:
        """
        Start the workers and wait for the first archive bytes, so a failure
        before anything was produced can still become an error response.

        Raises:
            ArchiveFailure: The archive failed before its first byte
        """
        self.start()
        if self._stream is not None:
            return
        self._stream = self.chunks()
        try:
            self._first = await anext(self._stream)
        except StopAsyncIteration:
            self._first = b""

    async def body(self) -> AsyncIterator[bytes]:
        """The archive bytes, starting with those read by prime()."""
        if self._stream is None:
            self.start()
            self._stream = self.chunks()
        if self._first:
            yield self._first
        async for chunk in self._stream:
            yield chunk

    async def shutdown(self) -> None:
        """Called once the response is done, successfully or not."""
        if not self.finished and not self.aborted:
            await self.abort("response_closed")
        if self._watcher is not None:
            await stop_watcher(self._watcher, self._stop_watching)
        self.session.cleanup_temp_files()
        self.logger.info(
            "playlist_archive_closed",
            files_added=self.files_added,
            files_error=self.files_error,
        )


class PlaylistDownloader:
    """
    Playlist listing plus archive job construction.

    Example:
        >>> playlists = PlaylistDownloader()
        >>> entries = await playlists.list_entries(url, session)
        >>> job = playlists.create_archive_job(entries, session, request)
    """

    def __init__(
        self,
        downloader: Optional[SingleItemDownloader] = None,
        fallback: Optional[FallbackExtractor] = None,
        concurrency: Optional[int] = None,
        max_entries: Optional[int] = None,
        compression_level: Optional[int] = None,
    ):
        self.downloader = downloader or SingleItemDownloader()
        self.fallback = fallback or self.downloader.fallback
        self.concurrency = concurrency or settings.PLAYLIST_CONCURRENCY
        self.max_entries = max_entries or settings.PLAYLIST_MAX_ENTRIES
        self.compression_level = compression_level

    async def list_entries(self, url: str, session: DownloadSession) -> List[PlaylistEntry]:
        """
        Flat-list the playlist, capped at ``max_entries``.

        Raises:
            ExtractionFailure: Tool failed or output could not be parsed
            ValidationError: Playlist has no entries
        """
        output = await self.fallback.dump_playlist(url, single_json=True, session=session)
        parsed = try_parse_playlist_output(output)
        if parsed is None:
            session.logger.warning("playlist_single_json_unparsed", message="Retrying with one document per entry")
            output = await self.fallback.dump_playlist(url, single_json=False, session=session)
            parsed = try_parse_playlist_output(output)
        if parsed is None:
            raise ExtractionFailure("Error parsing playlist JSON")

        total = len(parsed.get("entries") or [])
        entries = entries_from_listing(parsed, self.max_entries)
        session.logger.info("playlist_listed", total_entries=total, processing=len(entries))

        if not entries:
            raise ValidationError(EMPTY_PLAYLIST_MESSAGE, code=ErrorCode.EMPTY_PLAYLIST)
        return entries

    def create_archive_job(
        self,
        entries: List[PlaylistEntry],
        session: DownloadSession,
        request: Optional[Request] = None,
    ) -> PlaylistArchiveJob:
        return PlaylistArchiveJob(
            entries=entries,
            downloader=self.downloader,
            session=session,
            concurrency=self.concurrency,
            compression_level=self.compression_level,
            request=request,
        )

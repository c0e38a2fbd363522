"""
Single-Item Download Orchestrator

Coordinates resolver, transcoder and fallback tool for one URL:

    RESOLVING -> TRANSCODING -> RESPONDING
        \\-> FALLBACK_RESOLVING -> FALLBACK_DOWNLOADING -> RESPONDING

The result is an MP3 in a session-owned temp file. Delivery (and deletion
of the temp file after it) is done by the HTTP response.
"""

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional

import structlog

from ytmp3.config import settings
from ytmp3.errors import ExtractionIncompatibility
from ytmp3.services.fallback_extractor import FallbackExtractor
from ytmp3.services.models import DownloadResult, TranscodeJob, VideoMetadata, sanitize_title
from ytmp3.services.resolver import MetadataResolver
from ytmp3.services.session import DownloadSession
from ytmp3.services.transcoder import Transcoder

logger = structlog.get_logger()


class DownloadState(Enum):
    RESOLVING = "resolving"
    TRANSCODING = "transcoding"
    FALLBACK_RESOLVING = "fallback_resolving"
    FALLBACK_DOWNLOADING = "fallback_downloading"
    RESPONDING = "responding"


class TranscodeSlots:
    """
    Process-wide ceiling on simultaneous single-item jobs.

    A limit of 0 disables the ceiling. The semaphore is recreated when the
    running event loop changes.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _get(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.limit)
            self._loop = loop
        return self._semaphore

    @asynccontextmanager
    async def acquire(self):
        if self.limit <= 0:
            yield
            return
        async with self._get():
            yield


class SingleItemDownloader:
    """
    Download one video as MP3.

    Example:
        >>> downloader = SingleItemDownloader()
        >>> result = await downloader.download(url, session)
        >>> print(result.filename, result.size_bytes)
    """

    def __init__(
        self,
        resolver: Optional[MetadataResolver] = None,
        transcoder: Optional[Transcoder] = None,
        fallback: Optional[FallbackExtractor] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.resolver = resolver or MetadataResolver()
        self.transcoder = transcoder or Transcoder()
        self.fallback = fallback or FallbackExtractor()
        limit = settings.MAX_CONCURRENT_TRANSCODES if max_concurrent is None else max_concurrent
        self.slots = TranscodeSlots(limit)

    @staticmethod
    def _enter(state: DownloadState, session: DownloadSession, url: str) -> None:
        session.raise_if_cancelled()
        session.logger.info("download_state", state=state.value, url=url[:100])

    async def download(self, url: str, session: DownloadSession) -> DownloadResult:
        """
        Run the state machine for ``url``.

        Raises:
            ExtractionFailure: Resolver or fallback tool failed
            ConversionFailure: Transcoder failed or produced nothing
            ClientDisconnected: The session was cancelled
        """
        async with self.slots.acquire():
            self._enter(DownloadState.RESOLVING, session, url)
            try:
                metadata = await self.resolver.resolve(url)
            except ExtractionIncompatibility as e:
                session.logger.warning(
                    "primary_extraction_incompatible",
                    url=url[:100],
                    error=e.message,
                    message="Switching to yt-dlp command line tool",
                )
                result = await self._download_with_fallback(url, session)
            else:
                result = await self._transcode(url, metadata, session)

            self._enter(DownloadState.RESPONDING, session, url)
            return result

    async def _transcode(
        self,
        url: str,
        metadata: VideoMetadata,
        session: DownloadSession,
    ) -> DownloadResult:
        self._enter(DownloadState.TRANSCODING, session, url)
        temp_file = session.new_temp_file()
        source = self.resolver.open_stream(metadata, session)
        job = TranscodeJob(source=source, output_path=temp_file.path)

        succeeded = False
        try:
            size = await self.transcoder.transcode_to_file(job, session)
            succeeded = True
        finally:
            await source.aclose()
            if not succeeded:
                session.release_temp_file(temp_file)

        session.logger.info("conversion_completed", title=metadata.title, size_bytes=size)
        return DownloadResult(
            path=temp_file.path,
            filename=metadata.filename,
            title=metadata.title,
            size_bytes=size,
            temp_file=temp_file,
        )

    async def _download_with_fallback(self, url: str, session: DownloadSession) -> DownloadResult:
        self._enter(DownloadState.FALLBACK_RESOLVING, session, url)
        title = await self.fallback.fetch_title(url, session)

        self._enter(DownloadState.FALLBACK_DOWNLOADING, session, url)
        temp_file = session.new_temp_file(sweep_siblings=True)

        succeeded = False
        try:
            size = await self.fallback.download_mp3(url, temp_file, session)
            succeeded = True
        finally:
            if not succeeded:
                session.release_temp_file(temp_file)

        session.logger.info("fallback_download_completed", title=title, size_bytes=size)
        return DownloadResult(
            path=temp_file.path,
            filename=f"{sanitize_title(title)}.mp3",
            title=title,
            size_bytes=size,
            temp_file=temp_file,
            via_fallback=True,
        )

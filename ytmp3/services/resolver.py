"""
Metadata Resolver

Resolves a video URL to a title and a handle on its best audio-only
stream using the yt-dlp library, then opens that stream with httpx.

Failures are classified by message: signature/obfuscation breakage and
"unavailable" content raise ExtractionIncompatibility so the caller can
switch to the yt-dlp command line tool; anything else is an
ExtractionFailure.
"""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog
import yt_dlp
from yt_dlp.utils import DownloadError as YtDlpDownloadError, ExtractorError

from ytmp3.config import settings
from ytmp3.errors import (
    ExtractionFailure,
    ExtractionIncompatibility,
    is_extraction_incompatibility,
)
from ytmp3.services.models import SourceHandle, VideoMetadata
from ytmp3.services.session import DownloadSession

logger = structlog.get_logger()

# googlevideo throttles long unranged reads, so the source is fetched in ranges
SOURCE_RANGE_SIZE = 10 * 1024 * 1024


def _has_audio(fmt: Dict[str, Any]) -> bool:
    return fmt.get("acodec") not in (None, "none") and bool(fmt.get("url"))


def _audio_rank(fmt: Dict[str, Any]) -> float:
    return float(fmt.get("abr") or fmt.get("tbr") or 0)


def select_audio_format(info: Dict[str, Any], user_agent: Optional[str] = None) -> SourceHandle:
    """
    Pick the highest-bitrate audio-only format from yt-dlp info.

    Falls back to any format that carries audio, then to the top-level URL
    for single-format extractors.

    Raises:
        ExtractionFailure: If no format with audio is available
    """
    formats: List[Dict[str, Any]] = info.get("formats") or []
    audio_only = [f for f in formats if _has_audio(f) and f.get("vcodec") == "none"]
    candidates = audio_only or [f for f in formats if _has_audio(f)]

    if candidates:
        chosen = max(candidates, key=_audio_rank)
    elif info.get("url"):
        chosen = info
    else:
        raise ExtractionFailure("No audio stream available for this video")

    headers = dict(chosen.get("http_headers") or info.get("http_headers") or {})
    headers.setdefault("User-Agent", user_agent or settings.USER_AGENT)

    return SourceHandle(
        url=chosen["url"],
        headers=headers,
        format_id=chosen.get("format_id"),
        ext=chosen.get("ext"),
        abr=chosen.get("abr"),
    )


class MetadataResolver:
    """
    Primary extraction through the yt-dlp library.

    Example:
        >>> resolver = MetadataResolver()
        >>> metadata = await resolver.resolve("https://www.youtube.com/watch?v=...")
        >>> async for chunk in resolver.open_stream(metadata):
        ...     pass
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        chunk_size: Optional[int] = None,
        range_size: int = SOURCE_RANGE_SIZE,
    ):
        self.user_agent = user_agent or settings.USER_AGENT
        self.chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
        self.range_size = range_size
        self.logger = logger.bind(service="metadata_resolver")

    def _ydl_options(self) -> Dict[str, Any]:
        return {
            'quiet': True,
            'no_warnings': True,
            'noplaylist': True,
            'skip_download': True,
            'format': 'bestaudio/best',
            'http_headers': {'User-Agent': self.user_agent},
        }

    def _extract_info(self, url: str) -> Dict[str, Any]:
        """Blocking yt-dlp call (runs in thread pool)."""
        with yt_dlp.YoutubeDL(self._ydl_options()) as ydl:
            return ydl.extract_info(url, download=False)

    async def resolve(self, url: str) -> VideoMetadata:
        """
        Resolve a video URL to its title and audio stream handle.

        Raises:
            ExtractionIncompatibility: Extractor broke on the source
            ExtractionFailure: Any other resolution failure
        """
        self.logger.info("metadata_resolution_started", url=url[:100])
        try:
            info = await asyncio.to_thread(self._extract_info, url)
        except (YtDlpDownloadError, ExtractorError) as e:
            message = str(e)
            if is_extraction_incompatibility(message):
                self.logger.warning("extraction_incompatible", url=url[:100], error=message)
                raise ExtractionIncompatibility(message)
            self.logger.error("metadata_resolution_failed", url=url[:100], error=message)
            raise ExtractionFailure(f"Download failed: {message}")

        if not info:
            raise ExtractionFailure("Download failed: no metadata returned")

        source = select_audio_format(info, self.user_agent)
        title = info.get("title") or info.get("id") or "audio"
        self.logger.info(
            "metadata_resolved",
            title=title,
            format_id=source.format_id,
            abr=source.abr,
        )
        return VideoMetadata(
            title=title,
            source=source,
            video_id=info.get("id"),
            duration=info.get("duration"),
        )

    async def open_stream(
        self,
        metadata: VideoMetadata,
        session: Optional[DownloadSession] = None,
    ) -> AsyncIterator[bytes]:
        """
        Stream the raw audio bytes of a resolved video.

        Reads in ranges of ``range_size`` bytes; a server that ignores the
        Range header is read to the end in one go.

        Raises:
            ExtractionFailure: On HTTP errors from the media host
        """
        source = metadata.source
        client = httpx.AsyncClient(
            headers=source.headers,
            follow_redirects=True,
            timeout=httpx.Timeout(30.0, connect=10.0),
        )
        if session is not None:
            session.track_stream(client)

        start = 0
        try:
            while True:
                end = start + self.range_size - 1
                async with client.stream(
                    "GET", source.url, headers={"Range": f"bytes={start}-{end}"}
                ) as response:
                    if response.status_code == 416:
                        break
                    if response.status_code >= 400:
                        raise ExtractionFailure(
                            f"Source stream returned HTTP {response.status_code}"
                        )

                    received = 0
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        received += len(chunk)
                        yield chunk

                    if response.status_code != 206 or received < self.range_size:
                        break
                start += received
        except httpx.HTTPError as e:
            raise ExtractionFailure(f"Source stream failed: {e}")
        finally:
            if session is not None:
                session.forget_stream(client)
            await client.aclose()

"""
Download endpoint router

Accepts a YouTube URL and streams back an MP3 (single video) or a ZIP of
MP3s (playlist).
"""

import asyncio

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import Response

from ytmp3.config import settings
from ytmp3.errors import ClientDisconnected, DownloadError
from ytmp3.schemas import DownloadRequest, ErrorResponse
from ytmp3.services.models import MediaRequest
from ytmp3.services.playlist_download import PlaylistDownloader
from ytmp3.services.request_guard import run_guarded
from ytmp3.services.responses import (
    CLIENT_CLOSED_STATUS,
    ArchiveResponse,
    AttachmentResponse,
    error_response,
)
from ytmp3.services.session import DownloadSession
from ytmp3.services.single_download import SingleItemDownloader
from ytmp3.services.url_classifier import classify_url

logger = structlog.get_logger()

router = APIRouter(tags=["Download"])

# Shared by every request; holds no per-request state
single_downloader = SingleItemDownloader()
playlist_downloader = PlaylistDownloader(downloader=single_downloader)


def get_single_downloader() -> SingleItemDownloader:
    return single_downloader


def get_playlist_downloader() -> PlaylistDownloader:
    return playlist_downloader


async def _download_single(http_request: Request, media: MediaRequest, session: DownloadSession) -> Response:
    downloader = get_single_downloader()
    result = await run_guarded(
        http_request,
        session,
        downloader.download(media.url, session),
        timeout=settings.SINGLE_TIMEOUT_SECONDS,
    )
    if not session.claim_response():
        if result.temp_file is not None:
            session.release_temp_file(result.temp_file)
        return Response(status_code=CLIENT_CLOSED_STATUS)
    return AttachmentResponse(result, session)


async def _download_playlist(http_request: Request, media: MediaRequest, session: DownloadSession) -> Response:
    playlists = get_playlist_downloader()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.PLAYLIST_TIMEOUT_SECONDS
    entries = await run_guarded(
        http_request,
        session,
        playlists.list_entries(media.url, session),
        timeout=settings.PLAYLIST_TIMEOUT_SECONDS,
    )
    job = playlists.create_archive_job(entries, session, request=http_request)
    # status 200 is only committed once the archive has produced bytes
    try:
        await run_guarded(
            http_request,
            session,
            job.prime(),
            timeout=max(deadline - loop.time(), 0),
        )
    except (Exception, asyncio.CancelledError):
        await job.shutdown()
        raise
    if not session.claim_response():
        await job.shutdown()
        return Response(status_code=CLIENT_CLOSED_STATUS)
    return ArchiveResponse(job)


@router.post(
    "/download",
    responses={
        200: {
            "description": "MP3 file (single video) or ZIP archive (playlist)",
            "content": {"audio/mpeg": {}, "application/zip": {}},
        },
        400: {"model": ErrorResponse, "description": "Invalid URL or empty playlist"},
        500: {"model": ErrorResponse, "description": "Resolution, conversion or archive failure"},
        504: {"model": ErrorResponse, "description": "Deadline exceeded before a response was sent"},
    },
    summary="Download YouTube audio as MP3",
    description="""
Download the audio of a YouTube video or playlist as MP3.

This endpoint:
1. Validates the URL (youtube.com / youtu.be only)
2. Single video: resolves the best audio stream, converts it to 128 kbps MP3
   and returns it as an attachment. If the extractor cannot handle the video,
   the yt-dlp command line tool is used instead.
3. Playlist: lists up to 50 entries, converts them 3 at a time and streams a
   ZIP archive as the files complete. Entries that fail are skipped.

**Required Fields:**
- url: YouTube URL (e.g., https://www.youtube.com/watch?v=...)
"""
)
async def download(request: DownloadRequest, http_request: Request):
    """
    Convert a YouTube URL to MP3.

    **Example Request:**
    ```json
    {
        "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    }
    ```
    """
    session = DownloadSession(request_id=getattr(http_request.state, "request_id", None))
    session.logger.info(
        "download_request_received",
        url=(request.url or "")[:100],
    )

    try:
        media = classify_url(request.url)
        session.logger.info("download_request_classified", is_playlist=media.is_playlist)

        if media.is_playlist:
            return await _download_playlist(http_request, media, session)
        return await _download_single(http_request, media, session)

    except ClientDisconnected:
        session.cleanup_temp_files()
        return Response(status_code=CLIENT_CLOSED_STATUS)

    except DownloadError as e:
        session.cleanup_temp_files()
        return error_response(session, e)

    except Exception as e:
        session.logger.error("download_unexpected_error", error=str(e), exc_info=True)
        session.cleanup_temp_files()
        return error_response(session, DownloadError(f"Processing failed: {e}"))

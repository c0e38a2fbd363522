"""
Streaming responses that clean up after delivery.

Both responses run their cleanup in ``__call__``'s finally block, so the
temp file (or the playlist worker pool) is released whether the body was
sent completely, the send failed, or the client went away mid-stream.
"""

import os
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

import aiofiles
import structlog
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from ytmp3.config import settings
from ytmp3.errors import DeliveryFailure, DownloadError
from ytmp3.services.models import DownloadResult
from ytmp3.services.playlist_download import PlaylistArchiveJob
from ytmp3.services.session import DownloadSession

logger = structlog.get_logger()

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# nginx convention for "client closed request"; never reaches the client
CLIENT_CLOSED_STATUS = 499


def content_disposition(filename: str) -> str:
    """
    Attachment header for ``filename``.

    Non latin-1 names get an ASCII fallback (``audio`` when nothing of the
    stem survives) plus an RFC 5987 ``filename*``.

    Example:
        >>> content_disposition("song.mp3")
        'attachment; filename="song.mp3"'
    """
    try:
        filename.encode("latin-1")
    except UnicodeEncodeError:
        stem, ext = os.path.splitext(filename)
        stem = stem.encode("ascii", errors="ignore").decode("ascii").strip() or "audio"
        ext = ext.encode("ascii", errors="ignore").decode("ascii")
        fallback = f"{stem}{ext}"
        return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


def error_response(session: DownloadSession, error: DownloadError) -> Response:
    """
    Convert a pipeline error into the request's single JSON response.

    If the request already responded or the client left, nothing is sent.
    """
    if not session.claim_response():
        session.logger.info("response_suppressed", error_code=error.code.value)
        return Response(status_code=CLIENT_CLOSED_STATUS)
    error.log_error(request_id=session.request_id)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


class AttachmentResponse(StreamingResponse):
    """
    Streams a finished MP3 as an attachment, then deletes its temp file.
    """

    def __init__(
        self,
        result: DownloadResult,
        session: DownloadSession,
        chunk_size: Optional[int] = None,
    ):
        self.result = result
        self.session = session
        self.chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
        headers: Dict[str, str] = {
            "Content-Disposition": content_disposition(result.filename),
            "Content-Length": str(result.size_bytes),
            **NO_CACHE_HEADERS,
        }
        super().__init__(self._iter_file(), media_type="audio/mpeg", headers=headers)

    async def _iter_file(self) -> AsyncIterator[bytes]:
        async with aiofiles.open(self.result.path, "rb") as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
            self.session.logger.info(
                "attachment_sent",
                filename=self.result.filename,
                size_bytes=self.result.size_bytes,
                via_fallback=self.result.via_fallback,
            )
        except Exception as e:
            failure = DeliveryFailure(f"Error sending {self.result.filename}: {e}")
            failure.log_error(request_id=self.session.request_id)
        finally:
            if self.result.temp_file is not None:
                self.session.release_temp_file(self.result.temp_file)


class ArchiveResponse(StreamingResponse):
    """
    Streams a playlist ZIP while its worker pool fills it.

    The job is expected to be primed, so the status line is only sent once
    the archive has produced its first bytes.
    """

    def __init__(self, job: PlaylistArchiveJob, filename: str = "playlist.zip"):
        self.job = job
        headers = {
            "Content-Disposition": content_disposition(filename),
            **NO_CACHE_HEADERS,
        }
        super().__init__(job.body(), media_type="application/zip", headers=headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except Exception as e:
            failure = DeliveryFailure(f"Error streaming playlist archive: {e}")
            failure.log_error(request_id=self.job.session.request_id)
        finally:
            await self.job.shutdown()

"""
Per-request download session.

A DownloadSession is the cancellation token for one HTTP request. It owns
every subprocess, source stream and temp file the request creates, and it
holds the two flags that guarantee a single response:

- ``responded``: a response (success or error) has been handed to the server
- ``disconnected``: the client went away; nothing may be sent any more

``cancel()`` is the single cleanup routine used on disconnect, timeout and
playlist abort.
"""

import asyncio
import uuid
from typing import List, Optional, Set

import structlog

from ytmp3.errors import ClientDisconnected
from ytmp3.services.temp_files import TempFile

logger = structlog.get_logger()


class DownloadSession:
    """Mutable state of one request, confined to that request's tasks."""

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id or uuid.uuid4().hex[:12]
        self.responded = False
        self.disconnected = False
        self.cancelled = asyncio.Event()
        self.cancel_reason: Optional[str] = None
        self._processes: Set[asyncio.subprocess.Process] = set()
        self._streams: Set[object] = set()
        self._temp_files: List[TempFile] = []
        self.logger = logger.bind(request_id=self.request_id)

    # ----- response guard -----

    @property
    def can_respond(self) -> bool:
        return not self.responded and not self.disconnected

    def claim_response(self) -> bool:
        """
        Reserve the one response this request may send.

        Returns:
            True if the caller may send; False if a response was already
            sent or the client is gone
        """
        if not self.can_respond:
            return False
        self.responded = True
        return True

    def mark_disconnected(self) -> None:
        if not self.disconnected:
            self.disconnected = True
            self.logger.info("client_disconnected")

    def raise_if_cancelled(self) -> None:
        if self.cancelled.is_set():
            raise ClientDisconnected(f"Request cancelled: {self.cancel_reason}")

    # ----- owned resources -----

    def new_temp_file(self, suffix: str = ".mp3", sweep_siblings: bool = False) -> TempFile:
        temp_file = TempFile(suffix=suffix, sweep_siblings=sweep_siblings)
        self._temp_files.append(temp_file)
        return temp_file

    def release_temp_file(self, temp_file: TempFile) -> None:
        """Delete a temp file now and stop tracking it."""
        temp_file.unlink()
        if temp_file in self._temp_files:
            self._temp_files.remove(temp_file)

    def cleanup_temp_files(self) -> None:
        for temp_file in list(self._temp_files):
            self.release_temp_file(temp_file)

    @property
    def temp_files(self) -> List[TempFile]:
        return list(self._temp_files)

    def track_process(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)
        if self.cancelled.is_set():
            self._kill(process)

    def forget_process(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    def track_stream(self, stream) -> None:
        """Register anything with an ``aclose()`` coroutine method."""
        self._streams.add(stream)

    def forget_stream(self, stream) -> None:
        self._streams.discard(stream)

    # ----- cancellation -----

    def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
            self.logger.info("subprocess_killed", pid=process.pid)
        except ProcessLookupError:
            pass

    async def cancel(self, reason: str) -> None:
        """
        Fire the cancellation token.

        Kills in-flight subprocesses, closes open source streams and deletes
        every temp file still owned by the session. Safe to call twice.
        """
        if self.cancelled.is_set():
            return
        self.cancel_reason = reason
        self.cancelled.set()
        self.logger.info("session_cancelled", reason=reason)

        for process in list(self._processes):
            self._kill(process)
        self._processes.clear()

        for stream in list(self._streams):
            try:
                await stream.aclose()
            except Exception as e:
                self.logger.debug("stream_close_failed", error=str(e))
        self._streams.clear()

        self.cleanup_temp_files()

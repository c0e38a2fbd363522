"""
Transcoding Pipeline

Pipes a raw media byte stream through ffmpeg and produces MP3 at a fixed
policy: audio only, 128 kbps CBR, libmp3lame.

ffmpeg writes the MP3 to a temp file, and its size is returned once the
process has exited (output fully flushed).

Any source or transcoder failure raises ConversionFailure. There is no
retry; the caller deletes partial output.
"""

import asyncio
from typing import AsyncIterator, List, Optional

import structlog

from ytmp3.config import settings
from ytmp3.errors import ConversionFailure, ExtractionFailure
from ytmp3.services.models import TranscodeJob
from ytmp3.services.session import DownloadSession

logger = structlog.get_logger()

CONVERSION_ERROR_MESSAGE = "Error converting to MP3"
EMPTY_OUTPUT_MESSAGE = "Conversion produced empty output"
STDERR_TAIL_CHARS = 2000


class Transcoder:
    """
    ffmpeg wrapper bound to a download session.

    Args:
        ffmpeg_path: ffmpeg executable (default settings.FFMPEG_PATH)
    """

    def __init__(self, ffmpeg_path: Optional[str] = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.logger = logger.bind(service="transcoder")

    def build_command(self, job: TranscodeJob) -> List[str]:
        return [
            self.ffmpeg_path,
            '-hide_banner',
            '-loglevel', 'error',
            '-i', 'pipe:0',
            '-vn',
            '-map', 'a:0',
            '-codec:a', 'libmp3lame',
            '-b:a', job.bitrate,
            '-f', job.format,
            '-y',
            str(job.output_path),
        ]

    async def _spawn(self, job: TranscodeJob, session: DownloadSession) -> asyncio.subprocess.Process:
        command = self.build_command(job)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ConversionFailure(f"ffmpeg not found at {self.ffmpeg_path}")

        session.track_process(process)
        session.logger.info("ffmpeg_started", pid=process.pid, output=command[-1])
        return process

    async def _feed(self, process: asyncio.subprocess.Process, source: AsyncIterator[bytes]) -> int:
        """Copy the source into ffmpeg's stdin. Returns the byte count written."""
        written = 0
        try:
            async for chunk in source:
                process.stdin.write(chunk)
                await process.stdin.drain()
                written += len(chunk)
        except (BrokenPipeError, ConnectionResetError):
            # ffmpeg exited early; its exit code reports why
            pass
        finally:
            if not process.stdin.is_closing():
                process.stdin.close()
        return written

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> str:
        data = await process.stderr.read()
        return data.decode("utf-8", errors="ignore")[-STDERR_TAIL_CHARS:]

    def _check_exit(self, returncode: int, stderr: str, session: DownloadSession) -> None:
        if stderr.strip():
            session.logger.warning("ffmpeg_stderr", tool="ffmpeg", stderr=stderr.strip())
        if returncode != 0:
            session.logger.error("ffmpeg_failed", returncode=returncode)
            raise ConversionFailure(
                CONVERSION_ERROR_MESSAGE,
                details={"returncode": returncode, "stderr": stderr},
            )

    async def transcode_to_file(self, job: TranscodeJob, session: DownloadSession) -> int:
        """
        Transcode into ``job.output_path``.

        Returns:
            Size of the finished MP3 in bytes

        Raises:
            ConversionFailure: Source error, ffmpeg error, or empty output
        """
        process = await self._spawn(job, session)
        stderr_task = asyncio.create_task(self._read_stderr(process))
        try:
            await self._feed(process, job.source)
            returncode = await process.wait()
            stderr = await stderr_task
        except ExtractionFailure as e:
            self._kill(process)
            raise ConversionFailure(f"{CONVERSION_ERROR_MESSAGE}: {e.message}")
        except asyncio.CancelledError:
            self._kill(process)
            raise
        finally:
            session.forget_process(process)
            if not stderr_task.done():
                stderr_task.cancel()

        self._check_exit(returncode, stderr, session)

        try:
            size = job.output_path.stat().st_size
        except FileNotFoundError:
            size = 0
        if size == 0:
            session.logger.error("ffmpeg_empty_output", output=str(job.output_path))
            raise ConversionFailure(EMPTY_OUTPUT_MESSAGE)

        session.logger.info("ffmpeg_completed", output=str(job.output_path), size_bytes=size)
        return size


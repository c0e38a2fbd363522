"""
Fallback Extractor

Runs the yt-dlp command line tool when the library resolver cannot handle
a video, and for flat playlist listings.

Invocation goes through a fixed strategy sequence:

    DIRECT  ->  yt-dlp <args>
    SHIM    ->  npx yt-dlp <args>     (only if the binary was not found)

There is no further retry. stderr is logged for diagnostics only; the exit
code and stdout / the output file decide the outcome.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import structlog

from ytmp3.config import settings
from ytmp3.errors import ConversionFailure, ExtractionFailure, ToolNotFound
from ytmp3.services.session import DownloadSession
from ytmp3.services.temp_files import TempFile

logger = structlog.get_logger()

PLACEHOLDER_TITLE = "audio_download"


class InvocationStrategy(Enum):
    DIRECT = "direct"
    SHIM = "shim"


@dataclass
class ToolResult:
    """Outcome of one yt-dlp process."""
    returncode: int
    stdout: str
    stderr: str
    strategy: InvocationStrategy

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def first_json_object(output: str) -> Optional[dict]:
    """
    Decode the first JSON object in tool output, skipping any leading noise.

    Returns:
        The decoded object, or None if there is none
    """
    start = (output or "").find("{")
    if start == -1:
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(output, start)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


class FallbackExtractor:
    """
    yt-dlp CLI wrapper.

    Args:
        binary: yt-dlp executable (default settings.YTDLP_BINARY)
        shim: Package runner used when the binary is missing (default settings.NPX_BINARY)
        ffmpeg_path: Passed as --ffmpeg-location when it is not plain "ffmpeg"
    """

    def __init__(
        self,
        binary: Optional[str] = None,
        shim: Optional[str] = None,
        ffmpeg_path: Optional[str] = None,
    ):
        self.binary = binary or settings.YTDLP_BINARY
        self.shim = shim or settings.NPX_BINARY
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.logger = logger.bind(service="fallback_extractor")

    def _commands(self, args: List[str]) -> List[Tuple[InvocationStrategy, List[str]]]:
        return [
            (InvocationStrategy.DIRECT, [self.binary, *args]),
            (InvocationStrategy.SHIM, [self.shim, self.binary, *args]),
        ]

    async def run(self, args: List[str], session: DownloadSession) -> ToolResult:
        """
        Run yt-dlp with ``args``, falling back to the shim once.

        Raises:
            ToolNotFound: Neither strategy could start a process
        """
        for strategy, command in self._commands(args):
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                session.logger.warning(
                    "fallback_tool_missing",
                    strategy=strategy.value,
                    executable=command[0],
                )
                continue

            session.track_process(process)
            session.logger.info("fallback_tool_started", strategy=strategy.value, pid=process.pid)
            try:
                stdout, stderr = await process.communicate()
            except asyncio.CancelledError:
                if process.returncode is None:
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                raise
            finally:
                session.forget_process(process)

            stderr_text = stderr.decode("utf-8", errors="ignore").strip()
            if stderr_text:
                session.logger.warning("fallback_tool_stderr", tool="yt-dlp", stderr=stderr_text[-2000:])
            session.logger.info(
                "fallback_tool_exited",
                strategy=strategy.value,
                returncode=process.returncode,
            )
            return ToolResult(
                returncode=process.returncode,
                stdout=stdout.decode("utf-8", errors="ignore"),
                stderr=stderr_text,
                strategy=strategy,
            )

        raise ToolNotFound(
            f"{self.binary} is not installed and could not be started through {self.shim}"
        )

    async def fetch_title(self, url: str, session: DownloadSession) -> str:
        """
        Best-effort title lookup without downloading.

        Returns:
            The video title, or PLACEHOLDER_TITLE on any failure
        """
        args = [url, '--dump-json', '--no-playlist', '--no-warnings', '--skip-download']
        try:
            result = await self.run(args, session)
        except ExtractionFailure as e:
            session.logger.warning("fallback_title_failed", error=e.message)
            return PLACEHOLDER_TITLE

        if not result.ok:
            session.logger.warning("fallback_title_failed", returncode=result.returncode)
            return PLACEHOLDER_TITLE

        info = first_json_object(result.stdout)
        title = (info or {}).get("title")
        if not title:
            session.logger.info("fallback_title_unparsed", message="Using placeholder title")
            return PLACEHOLDER_TITLE

        session.logger.info("fallback_title_resolved", title=title)
        return title

    def download_args(self, url: str, temp_file: TempFile) -> List[str]:
        args = [
            '-o', temp_file.output_template,
            '--no-playlist',
            '--no-warnings',
            '--extract-audio',
            '--audio-format', 'mp3',
            '--audio-quality', settings.AUDIO_BITRATE.upper(),
        ]
        if self.ffmpeg_path and self.ffmpeg_path != "ffmpeg":
            args += ['--ffmpeg-location', self.ffmpeg_path]
        args.append(url)
        return args

    async def download_mp3(self, url: str, temp_file: TempFile, session: DownloadSession) -> int:
        """
        Let yt-dlp download and convert to MP3 in one step.

        Returns:
            Size of ``temp_file.path`` in bytes

        Raises:
            ToolNotFound: yt-dlp could not be started
            ExtractionFailure: Non-zero exit or missing output file
            ConversionFailure: Output file is empty
        """
        result = await self.run(self.download_args(url, temp_file), session)
        if not result.ok:
            raise ExtractionFailure(
                f"Fallback download failed (exit code {result.returncode})",
                details={"stderr": result.stderr[-2000:]},
            )

        if not temp_file.exists():
            raise ExtractionFailure("Fallback download finished without an MP3 file")

        size = temp_file.size()
        if size == 0:
            raise ConversionFailure("Conversion produced empty output")
        return size

    async def dump_playlist(self, url: str, single_json: bool, session: DownloadSession) -> str:
        """
        Flat playlist listing.

        Args:
            single_json: One consolidated document (--dump-single-json) or one
                document per entry (--dump-json)

        Returns:
            Raw stdout

        Raises:
            ExtractionFailure: Non-zero exit or tool missing
        """
        dump_flag = '--dump-single-json' if single_json else '--dump-json'
        args = [url, dump_flag, '--flat-playlist', '--no-warnings', '--skip-download']
        result = await self.run(args, session)
        if not result.ok:
            raise ExtractionFailure(
                "Could not read playlist information",
                details={"returncode": result.returncode},
            )
        return result.stdout

"""
Domain types shared by the download services.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from ytmp3.config import settings
from ytmp3.services.temp_files import TempFile

# Characters that are not allowed in the attachment filename
_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"|?*\\/]')
MAX_TITLE_LENGTH = 200


def sanitize_title(title: str) -> str:
    """
    Make a video title safe to use as a filename.

    Removes ``<>:"|?*\\/`` and truncates to 200 characters.

    Example:
        >>> sanitize_title('AC/DC: "Thunderstruck"?')
        'ACDC Thunderstruck'
    """
    return _UNSAFE_FILENAME_CHARS.sub("", title or "")[:MAX_TITLE_LENGTH]


@dataclass(frozen=True)
class MediaRequest:
    """A validated download request."""
    url: str
    is_playlist: bool


@dataclass
class SourceHandle:
    """Where the selected audio-only format can be fetched from."""
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    format_id: Optional[str] = None
    ext: Optional[str] = None
    abr: Optional[float] = None


@dataclass
class VideoMetadata:
    """Resolver output: title plus a handle to the raw media stream."""
    title: str
    source: SourceHandle
    video_id: Optional[str] = None
    duration: Optional[float] = None

    @property
    def safe_title(self) -> str:
        return sanitize_title(self.title)

    @property
    def filename(self) -> str:
        return f"{self.safe_title}.mp3"


@dataclass(frozen=True)
class PlaylistEntry:
    """One member of a flat playlist listing."""
    id: str
    title: str

    @property
    def watch_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.id}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["PlaylistEntry"]:
        """Build an entry from yt-dlp JSON; entries without an id are skipped."""
        entry_id = data.get("id") if isinstance(data, dict) else None
        if not entry_id:
            return None
        return cls(id=str(entry_id), title=str(data.get("title") or entry_id))


@dataclass
class TranscodeJob:
    """One run of the transcoder: raw source in, MP3 file out."""
    source: AsyncIterator[bytes]
    output_path: Path
    bitrate: str = settings.AUDIO_BITRATE
    format: str = settings.AUDIO_FORMAT


@dataclass
class DownloadResult:
    """Finished single-item download waiting to be delivered."""
    path: Path
    filename: str
    title: str
    size_bytes: int
    temp_file: Optional[TempFile] = None
    via_fallback: bool = False

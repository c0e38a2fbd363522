"""
Temporary file lifecycle.

Every MP3 produced on disk lives in a TempFile owned by exactly one job.
The file is named with a random suffix plus a millisecond timestamp so
concurrent requests never collide, and it gets exactly one unlink attempt
whichever way the job ends.
"""

import secrets
import time
from pathlib import Path
from typing import List, Optional

import structlog

from ytmp3.config import settings

logger = structlog.get_logger()

TEMP_PREFIX = "ytmp3"


def new_temp_stem(directory: Optional[str] = None) -> Path:
    """
    Build a unique path stem (no extension) under the temp directory.

    Example:
        >>> new_temp_stem("/tmp").name.startswith("ytmp3-")
        True
    """
    base = Path(directory or settings.TEMP_DIR)
    token = secrets.token_hex(6)
    timestamp = int(time.time() * 1000)
    return base / f"{TEMP_PREFIX}-{token}-{timestamp}"


class TempFile:
    """
    A temp path with a single deletion attempt.

    Args:
        suffix: Extension of the expected output (default ".mp3")
        directory: Parent directory (default settings.TEMP_DIR)
        sweep_siblings: Also remove files sharing the stem on delete. Used for
            the fallback tool, which leaves intermediate downloads behind.
    """

    def __init__(
        self,
        suffix: str = ".mp3",
        directory: Optional[str] = None,
        sweep_siblings: bool = False,
    ):
        self.stem = new_temp_stem(directory)
        self.path = self.stem.with_name(self.stem.name + suffix)
        self.sweep_siblings = sweep_siblings
        self._unlink_attempted = False

    @property
    def output_template(self) -> str:
        """yt-dlp style output template for this stem."""
        return str(self.stem) + ".%(ext)s"

    @property
    def deleted(self) -> bool:
        return self._unlink_attempted

    def exists(self) -> bool:
        return self.path.exists()

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def _targets(self) -> List[Path]:
        if not self.sweep_siblings:
            return [self.path]
        siblings = list(self.stem.parent.glob(self.stem.name + ".*"))
        if self.path not in siblings:
            siblings.append(self.path)
        return siblings

    def unlink(self) -> bool:
        """
        Delete the file. Only the first call does anything.

        Returns:
            True if this call performed the deletion attempt
        """
        if self._unlink_attempted:
            return False
        self._unlink_attempted = True

        for target in self._targets():
            try:
                target.unlink()
                logger.debug("temp_file_deleted", path=str(target))
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("temp_file_delete_failed", path=str(target), error=str(e))
        return True

    def __repr__(self) -> str:
        return f"TempFile({str(self.path)!r})"

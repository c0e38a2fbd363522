"""
URL validation and single/playlist classification.

Classification is a plain pattern match so invalid requests are rejected
before any network call or subprocess is made.
"""

import re
from typing import Optional

from ytmp3.errors import ValidationError
from ytmp3.services.models import MediaRequest

YOUTUBE_HOST_PATTERN = re.compile(r"(?:youtube\.com|youtu\.be)")
YOUTUBE_VIDEO_PATTERN = re.compile(r"(?:youtube\.com/watch|youtu\.be/)")

MISSING_URL_MESSAGE = "Invalid YouTube URL."
NOT_YOUTUBE_MESSAGE = "URL must be a YouTube link."


def is_playlist_url(url: str) -> bool:
    return "list=" in url or "playlist" in url


def classify_url(url: Optional[str]) -> MediaRequest:
    """
    Validate a request URL and decide whether it points at a playlist.

    Args:
        url: Raw URL from the request body

    Returns:
        MediaRequest with the stripped URL

    Raises:
        ValidationError: If the URL is missing, not YouTube, or not a video link

    Example:
        >>> classify_url("https://youtu.be/abc").is_playlist
        False
        >>> classify_url("https://www.youtube.com/playlist?list=PL1").is_playlist
        True
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError(MISSING_URL_MESSAGE)

    url = url.strip()
    if not YOUTUBE_HOST_PATTERN.search(url):
        raise ValidationError(NOT_YOUTUBE_MESSAGE)

    if is_playlist_url(url):
        return MediaRequest(url=url, is_playlist=True)

    if not YOUTUBE_VIDEO_PATTERN.search(url):
        raise ValidationError(MISSING_URL_MESSAGE)

    return MediaRequest(url=url, is_playlist=False)

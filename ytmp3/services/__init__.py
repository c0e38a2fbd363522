"""
Services module for the download pipeline
"""

from .fallback_extractor import FallbackExtractor
from .playlist_download import PlaylistDownloader
from .resolver import MetadataResolver
from .single_download import SingleItemDownloader
from .transcoder import Transcoder

__all__ = [
    "FallbackExtractor",
    "MetadataResolver",
    "PlaylistDownloader",
    "SingleItemDownloader",
    "Transcoder",
]

"""
Configuration management for the MP3 download gateway
"""

import os
import tempfile
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "3000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # External binaries
    FFMPEG_PATH: str = os.getenv("FFMPEG_PATH", "ffmpeg")
    YTDLP_BINARY: str = os.getenv("YTDLP_BINARY", "yt-dlp")
    # Package runner used when the yt-dlp binary is not on PATH
    NPX_BINARY: str = os.getenv("NPX_BINARY", "npx")

    # Temporary files (MP3 outputs live here until they are sent)
    TEMP_DIR: str = os.getenv("TEMP_DIR", tempfile.gettempdir())

    # Output policy: audio only, highest source quality, 128 kbps MP3
    AUDIO_BITRATE: str = "128k"
    AUDIO_FORMAT: str = "mp3"

    # Request deadlines (in seconds)
    SINGLE_TIMEOUT_SECONDS: float = float(os.getenv("SINGLE_TIMEOUT_SECONDS", "120"))
    PLAYLIST_TIMEOUT_SECONDS: float = float(os.getenv("PLAYLIST_TIMEOUT_SECONDS", "300"))

    # Playlist processing
    PLAYLIST_MAX_ENTRIES: int = int(os.getenv("PLAYLIST_MAX_ENTRIES", "50"))
    PLAYLIST_CONCURRENCY: int = int(os.getenv("PLAYLIST_CONCURRENCY", "3"))
    ZIP_COMPRESSION_LEVEL: int = int(os.getenv("ZIP_COMPRESSION_LEVEL", "5"))

    # Process-wide ceiling on simultaneous single-item jobs (0 = unbounded)
    MAX_CONCURRENT_TRANSCODES: int = int(os.getenv("MAX_CONCURRENT_TRANSCODES", "6"))

    # Streaming
    STREAM_CHUNK_SIZE: int = int(os.getenv("STREAM_CHUNK_SIZE", "65536"))
    DISCONNECT_POLL_INTERVAL: float = float(os.getenv("DISCONNECT_POLL_INTERVAL", "0.5"))

    # Sent with every request to the media host
    USER_AGENT: str = os.getenv(
        "USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    )

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def validate(self) -> None:
        """
        Validate settings at startup.
        Raises ValueError on values the download pipeline cannot work with.
        """
        if self.PLAYLIST_CONCURRENCY < 1:
            raise ValueError("PLAYLIST_CONCURRENCY must be at least 1")
        if self.PLAYLIST_MAX_ENTRIES < 1:
            raise ValueError("PLAYLIST_MAX_ENTRIES must be at least 1")
        if self.MAX_CONCURRENT_TRANSCODES < 0:
            raise ValueError("MAX_CONCURRENT_TRANSCODES cannot be negative")
        if not 0 <= self.ZIP_COMPRESSION_LEVEL <= 9:
            raise ValueError("ZIP_COMPRESSION_LEVEL must be between 0 and 9")


# Global settings instance
settings = Settings()

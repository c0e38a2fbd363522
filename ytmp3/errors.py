"""
Error taxonomy for the download pipeline.

Every failure raised by the resolver, transcoder, fallback tool or the
orchestrators is a DownloadError subclass. The HTTP layer converts them
into a single ``{"error": message}`` body with the status code the error
carries.
"""

from enum import Enum
from typing import Optional, Dict, Any

import structlog

logger = structlog.get_logger()


class ErrorCode(Enum):
    """
    Enumeration of all possible error codes in the pipeline.

    Organized by category:
    - Client errors: request validation (4xx)
    - Extraction errors: resolver and fallback tool
    - Processing errors: transcoding, archiving, delivery
    - Request lifecycle: deadline and disconnect
    """

    # Client errors (4xx)
    INVALID_URL = "INVALID_URL"
    EMPTY_PLAYLIST = "EMPTY_PLAYLIST"

    # Extraction
    EXTRACTION_INCOMPATIBLE = "EXTRACTION_INCOMPATIBLE"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"

    # Processing
    CONVERSION_FAILED = "CONVERSION_FAILED"
    ARCHIVE_FAILED = "ARCHIVE_FAILED"
    DELIVERY_FAILED = "DELIVERY_FAILED"

    # Request lifecycle
    TIMEOUT = "TIMEOUT"
    CLIENT_DISCONNECTED = "CLIENT_DISCONNECTED"
    INTERNAL = "INTERNAL"


class DownloadError(Exception):
    """
    Base exception for download pipeline errors.

    Example:
        >>> raise DownloadError("Something broke", code=ErrorCode.INTERNAL)
    """

    status_code: int = 500
    default_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Body sent to the client."""
        return {"error": self.message}

    def log_error(self, **context) -> None:
        """Client errors are logged as warnings, everything else as errors."""
        log = logger.warning if self.status_code < 500 else logger.error
        log(
            "download_error",
            error_code=self.code.value,
            message=self.message,
            details=self.details,
            **context
        )

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DownloadError):
    """Bad, missing or non-YouTube URL, or an empty playlist."""

    status_code = 400
    default_code = ErrorCode.INVALID_URL


class ExtractionIncompatibility(DownloadError):
    """The primary resolver cannot parse the source; triggers the fallback tool."""

    default_code = ErrorCode.EXTRACTION_INCOMPATIBLE


class ExtractionFailure(DownloadError):
    """Resolver or tool failed for any other reason (including exit code != 0)."""

    default_code = ErrorCode.EXTRACTION_FAILED


class ToolNotFound(ExtractionFailure):
    """Neither the extraction tool nor its package-runner shim could be started."""

    default_code = ErrorCode.TOOL_NOT_FOUND


class ConversionFailure(DownloadError):
    """Transcoder error or zero-byte output."""

    default_code = ErrorCode.CONVERSION_FAILED


class ArchiveFailure(DownloadError):
    """Streaming ZIP could not be written."""

    default_code = ErrorCode.ARCHIVE_FAILED


class DeliveryFailure(DownloadError):
    """Error while streaming a finished file to the client. Logged only."""

    default_code = ErrorCode.DELIVERY_FAILED


class DownloadTimeout(DownloadError):
    """Request deadline reached before any response was sent."""

    status_code = 504
    default_code = ErrorCode.TIMEOUT


class ClientDisconnected(DownloadError):
    """The client went away. Never reported, only used to unwind work."""

    status_code = 499
    default_code = ErrorCode.CLIENT_DISCONNECTED


INCOMPATIBILITY_MARKERS = (
    "Could not extract functions",
    "Unable to extract",
    "This video is unavailable",
    "Signature extraction failed",
    "nsig extraction failed",
)


def is_extraction_incompatibility(message: str) -> bool:
    """
    Decide whether a resolver failure means the extractor broke on the source.

    Args:
        message: Error message raised by the extraction library

    Returns:
        True when the message contains one of the known markers

    Example:
        >>> is_extraction_incompatibility("ERROR: Unable to extract nsig")
        True
        >>> is_extraction_incompatibility("HTTP Error 403: Forbidden")
        False
    """
    if not message:
        return False
    return any(marker in message for marker in INCOMPATIBILITY_MARKERS)

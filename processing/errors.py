"""Error types raised by the compression core."""

from typing import Optional


class CompressionError(Exception):
    """Base class for every failure surfaced to callers."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(CompressionError):
    """Unsupported MIME type or oversized payload, rejected before any work."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class MetadataUnavailable(CompressionError):
    """Dimensions or duration could not be obtained from the source."""


class EngineInitFailure(CompressionError):
    """Codec engine could not be loaded from any source, or the remote service is unreachable."""


class EncodeFailure(CompressionError):
    """Image decode/encode produced no output."""


class TranscodeFailure(CompressionError):
    """Video transcode step failed or produced no output."""


class RemoteServiceError(CompressionError):
    """Non-2xx response from the remote compression service."""

    def __init__(self, message: str, status_code: int, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details

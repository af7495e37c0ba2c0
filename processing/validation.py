from typing import Optional, Sequence

from config.compression_config import ALLOWED_IMAGE_TYPES, ALLOWED_VIDEO_TYPES
from processing.errors import InvalidInput
from processing.models import SourceMedia


def validate_source(
    source: SourceMedia, allowed_types: Sequence[str], max_bytes: Optional[int] = None
) -> None:
    """Reject unsupported MIME types and oversized payloads.

    Raises:
        InvalidInput: with status 415 for the MIME type, 413 for the size, 400 for empty input
    """
    if source.mime_type not in allowed_types:
        raise InvalidInput(
            f"Invalid file type {source.mime_type}. Supported: {', '.join(allowed_types)}",
            status_code=415,
        )
    if not source.size:
        raise InvalidInput(f"File {source.name} is empty")
    if max_bytes is not None and source.size > max_bytes:
        raise InvalidInput(
            f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.",
            status_code=413,
        )


def validate_image(source: SourceMedia, max_bytes: Optional[int] = None) -> None:
    validate_source(source, ALLOWED_IMAGE_TYPES, max_bytes)


def validate_video(source: SourceMedia, max_bytes: Optional[int] = None) -> None:
    validate_source(source, ALLOWED_VIDEO_TYPES, max_bytes)

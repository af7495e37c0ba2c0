"""Compression core: resolve options, then recompress images or transcode videos.

Every entry point is a coroutine. Per file the order is always probe, then
resolve, then compress.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Union

from processing.backends import select_video_backend
from processing.config import get_settings
from processing.errors import CompressionError, MetadataUnavailable
from processing.image import probe_image, recompress_image
from processing.models import (
    CompressionResult,
    ImageOptions,
    SourceMedia,
    VideoMetadata,
    VideoOptions,
)
from processing.resolver import resolve_command, resolve_image_command, resolve_video_command
from processing.video import ProgressCallback, VideoBackend


async def compress_image(source: SourceMedia, options: ImageOptions) -> CompressionResult:
    """Compress one image.

    The source is only decoded for its size when max-dimension clamping is
    requested; a failed decode then surfaces as MetadataUnavailable.
    """
    metadata = None
    if options.limit_max_dimensions and (options.max_width or options.max_height):
        metadata = await asyncio.to_thread(probe_image, source)

    command = resolve_image_command(options, metadata, get_settings().image_max_size_bytes)
    return await asyncio.to_thread(recompress_image, source, command)


async def compress_images(
    sources: Sequence[SourceMedia], options: ImageOptions
) -> List[Union[CompressionResult, CompressionError]]:
    """Compress a batch concurrently.

    Each slot holds the item's result or its CompressionError; one failure
    leaves its siblings untouched. Any other exception propagates.
    """
    outcomes = await asyncio.gather(
        *(compress_image(source, options) for source in sources), return_exceptions=True
    )
    for source, outcome in zip(sources, outcomes):
        if isinstance(outcome, CompressionError):
            logging.warning("Batch item %s failed: %s", source.name, outcome.message)
        elif isinstance(outcome, BaseException):
            raise outcome
    return list(outcomes)


async def probe_video(source: SourceMedia, backend: Optional[VideoBackend] = None) -> VideoMetadata:
    backend = backend or select_video_backend()
    return await backend.probe(source)


async def compress_video(
    source: SourceMedia,
    options: VideoOptions,
    on_progress: Optional[ProgressCallback] = None,
    backend: Optional[VideoBackend] = None,
) -> CompressionResult:
    """Transcode one video on the given (or configured) backend.

    Duration is only needed to interpolate progress, so the source is probed
    only when a callback is supplied and the backend reports progress.
    """
    backend = backend or select_video_backend()

    metadata = None
    if on_progress is not None and backend.reports_progress:
        try:
            metadata = await backend.probe(source)
        except MetadataUnavailable as exc:
            logging.warning("Could not probe %s, progress will be coarse: %s", source.name, exc.message)

    command = resolve_video_command(options, metadata)
    logging.info("Resolved video command for %s: %s", source.name, command)
    return await backend.compress(source, command, on_progress)


__all__ = [
    "compress_image",
    "compress_images",
    "compress_video",
    "probe_video",
    "resolve_command",
]

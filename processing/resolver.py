"""Turn user-facing options plus source metadata into concrete engine commands.

Everything here is pure: no I/O, no engine access. Engines consume only the
commands produced by this module and never look at the raw options again.
"""

import logging
import os
import re
from typing import Optional, Tuple, Union

from config.compression_config import IMAGE_FORMATS, VIDEO_CONTAINERS, VIDEO_QUALITY_PRESETS
from processing.config import get_video_config
from processing.errors import InvalidInput, MetadataUnavailable
from processing.models import (
    ImageCommand,
    ImageMetadata,
    ImageOptions,
    VideoCommand,
    VideoMetadata,
    VideoOptions,
)


BITRATE_PATTERN = re.compile(r"^\d+k$")
RESOLUTION_PATTERN = re.compile(r"^(\d+)x(\d+)$")


def derive_filename(source_name: str, extension: str) -> str:
    """Return ``<stem>_compressed.<ext>`` for a source file name."""
    stem = os.path.splitext(os.path.basename(source_name))[0] or "file"
    return f"{stem}_compressed.{extension}"


def fit_within(
    width: int, height: int, max_width: Optional[int], max_height: Optional[int]
) -> Tuple[int, int]:
    """Shrink (width, height) proportionally so neither axis exceeds its max.

    Never upscales. A missing max leaves that axis unconstrained.
    """
    scale = 1.0
    if max_width:
        scale = min(scale, max_width / float(width))
    if max_height:
        scale = min(scale, max_height / float(height))
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def parse_resolution(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse ``WxH``; malformed or partial strings yield None."""
    if not value:
        return None
    match = RESOLUTION_PATTERN.match(value.strip())
    if not match:
        return None
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        return None
    return width, height


def parse_bitrate(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    return value if BITRATE_PATTERN.match(value) else None


def _bitrate_kbps(value: str) -> int:
    return int(value[:-1])


def resolve_image_command(
    options: ImageOptions,
    metadata: Optional[ImageMetadata] = None,
    max_size_bytes: Optional[int] = None,
) -> ImageCommand:
    """Resolve image options into an ImageCommand.

    Raises:
        InvalidInput: output format is not one of jpeg, png, webp
        MetadataUnavailable: clamping was requested but the intrinsic size is unknown
    """
    fmt = IMAGE_FORMATS.get(options.output_format)
    if fmt is None:
        raise InvalidInput(f"Unsupported output format: {options.output_format}")

    quality = min(100, max(0, options.quality_percent)) / 100.0
    bounds = []
    exact: Optional[Tuple[Optional[int], Optional[int]]] = None
    target_size: Optional[Tuple[int, int]] = None

    if options.limit_max_dimensions and (options.max_width or options.max_height):
        if metadata is None:
            raise MetadataUnavailable(
                "Image dimensions are unavailable; retry without limiting maximum dimensions"
            )
        too_wide = bool(options.max_width) and metadata.width > options.max_width
        too_tall = bool(options.max_height) and metadata.height > options.max_height
        if too_wide or too_tall:
            if options.maintain_aspect_ratio:
                target_size = fit_within(
                    metadata.width, metadata.height, options.max_width, options.max_height
                )
                bounds.append(max(target_size))
            else:
                target_size = (
                    min(metadata.width, options.max_width or metadata.width),
                    min(metadata.height, options.max_height or metadata.height),
                )
                exact = target_size

    if options.resize_enabled and (options.width or options.height):
        if options.maintain_aspect_ratio:
            bounds.append(max(v for v in (options.width, options.height) if v))
        else:
            # Exact dimensions win over any clamp computed above
            exact = (options.width or None, options.height or None)
            target_size = (
                (options.width, options.height) if options.width and options.height else None
            )

    common = dict(
        quality=quality,
        output_format=options.output_format,
        mime_type=fmt["mime_type"],
        extension=fmt["extension"],
        max_size_bytes=max_size_bytes,
    )

    if exact is not None:
        logging.info("Resolved exact-dimension image command: %sx%s", exact[0], exact[1])
        return ImageCommand(
            mode="exact",
            exact_width=exact[0],
            exact_height=exact[1],
            target_size=target_size,
            **common,
        )

    max_dimension = min(bounds) if bounds else None
    if target_size is not None and max_dimension is not None:
        target_size = (min(target_size[0], max_dimension), min(target_size[1], max_dimension))
    return ImageCommand(
        mode="fit",
        max_dimension=max_dimension,
        target_size=target_size,
        **common,
    )


def resolve_video_command(
    options: VideoOptions, metadata: Optional[VideoMetadata] = None
) -> VideoCommand:
    """Resolve video options into a VideoCommand.

    Unknown presets fall back to medium and unknown formats to mp4. A custom
    bitrate replaces the preset's video bitrate only; audio follows the preset.
    """
    preset = options.quality_preset
    if preset not in VIDEO_QUALITY_PRESETS:
        logging.warning("Unknown quality preset %r, using medium", preset)
        preset = "medium"
    video_bitrate, audio_bitrate = VIDEO_QUALITY_PRESETS[preset]

    custom = parse_bitrate(options.custom_bitrate)
    if custom:
        video_bitrate = custom
    elif options.custom_bitrate:
        logging.warning("Ignoring malformed bitrate %r", options.custom_bitrate)

    container = options.output_format if options.output_format in VIDEO_CONTAINERS else "mp4"
    config = get_video_config(container)

    scale = parse_resolution(options.resolution)
    if options.resolution and scale is None:
        logging.warning("Ignoring malformed resolution %r", options.resolution)

    return VideoCommand(
        quality_preset=preset,
        video_bitrate=video_bitrate,
        audio_bitrate=audio_bitrate,
        container=container,
        mime_type=VIDEO_CONTAINERS[container]["mime_type"],
        video_codec=config["video_codec"],
        audio_codec=config["audio_codec"],
        encoder_preset=config["preset"],
        crf=config["crf"],
        bufsize=f"{_bitrate_kbps(video_bitrate) * config['bufsize_factor']}k",
        faststart=container == "mp4" and config["enable_faststart"],
        scale=scale,
        duration=metadata.duration if metadata else None,
        max_processing_time=config["max_processing_time"],
    )


def resolve_command(
    metadata: Union[ImageMetadata, VideoMetadata, None],
    options: Union[ImageOptions, VideoOptions],
) -> Union[ImageCommand, VideoCommand]:
    """Dispatch to the image or video resolver based on the options type."""
    if isinstance(options, ImageOptions):
        if metadata is not None and not isinstance(metadata, ImageMetadata):
            raise TypeError("Image options require ImageMetadata")
        return resolve_image_command(options, metadata)
    if isinstance(options, VideoOptions):
        if metadata is not None and not isinstance(metadata, VideoMetadata):
            raise TypeError("Video options require VideoMetadata")
        return resolve_video_command(options, metadata)
    raise TypeError(f"Unsupported options type: {type(options).__name__}")

import mimetypes
import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from config.compression_config import (
    IMAGE_QUALITY_PRESETS,
    IMAGE_QUALITY_THRESHOLDS,
)


@dataclass(frozen=True)
class SourceMedia:
    """Immutable input artifact owned by the caller for one compression call."""

    data: bytes
    mime_type: str
    name: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def stem(self) -> str:
        return os.path.splitext(os.path.basename(self.name))[0]

    @property
    def extension(self) -> str:
        return os.path.splitext(self.name)[1].lstrip(".").lower()

    @classmethod
    def from_path(cls, path: str, mime_type: Optional[str] = None) -> "SourceMedia":
        with open(path, "rb") as fh:
            data = fh.read()
        guessed = mime_type or mimetypes.guess_type(path)[0] or "application/octet-stream"
        return cls(data=data, mime_type=guessed, name=os.path.basename(path))


def quality_preset_for(percent: int) -> str:
    """Derive the image quality preset from a percent in [0, 100]."""
    for preset, upper in IMAGE_QUALITY_THRESHOLDS:
        if percent <= upper:
            return preset
    return "lossless"


def quality_percent_for(preset: str) -> int:
    try:
        return IMAGE_QUALITY_PRESETS[preset]
    except KeyError:
        raise ValueError(f"Unknown quality preset: {preset}") from None


@dataclass(frozen=True)
class ImageOptions:
    output_format: str = "jpeg"
    # Leave either unset to derive it from the other; both unset means medium.
    quality_percent: Optional[int] = None
    quality_preset: Optional[str] = None
    resize_enabled: bool = False
    width: Optional[int] = None
    height: Optional[int] = None
    maintain_aspect_ratio: bool = True
    limit_max_dimensions: bool = False
    max_width: Optional[int] = None
    max_height: Optional[int] = None

    def __post_init__(self) -> None:
        percent, preset = self.quality_percent, self.quality_preset
        if percent is None and preset is None:
            preset = "medium"
        if percent is None:
            percent = quality_percent_for(preset)
        else:
            percent = min(100, max(0, int(percent)))
            derived = quality_preset_for(percent)
            if preset is None:
                preset = derived
            elif preset != derived:
                raise ValueError(
                    f"Quality {percent}% belongs to preset {derived!r}, not {preset!r}"
                )
        object.__setattr__(self, "quality_percent", percent)
        object.__setattr__(self, "quality_preset", preset)

    def with_quality_percent(self, percent: int) -> "ImageOptions":
        """Set the percent; the preset is derived from it."""
        percent = min(100, max(0, int(percent)))
        return replace(self, quality_percent=percent, quality_preset=quality_preset_for(percent))

    def with_quality_preset(self, preset: str) -> "ImageOptions":
        """Set the preset; the percent is derived from it."""
        return replace(self, quality_preset=preset, quality_percent=quality_percent_for(preset))


@dataclass(frozen=True)
class VideoOptions:
    quality_preset: str = "medium"
    output_format: str = "mp4"
    resolution: Optional[str] = None
    custom_bitrate: Optional[str] = None


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int


@dataclass(frozen=True)
class VideoMetadata:
    duration: Optional[float]
    width: Optional[int]
    height: Optional[int]


@dataclass(frozen=True)
class ImageCommand:
    # "fit": longest-edge bound through the compressor
    # "exact": raster resize to exact_width x exact_height first
    mode: str
    quality: float
    output_format: str
    mime_type: str
    extension: str
    max_dimension: Optional[int] = None
    exact_width: Optional[int] = None
    exact_height: Optional[int] = None
    target_size: Optional[Tuple[int, int]] = None
    max_size_bytes: Optional[int] = None


@dataclass(frozen=True)
class VideoCommand:
    quality_preset: str
    video_bitrate: str
    audio_bitrate: str
    container: str
    mime_type: str
    video_codec: str
    audio_codec: str
    encoder_preset: str
    crf: int
    bufsize: str
    faststart: bool
    scale: Optional[Tuple[int, int]] = None
    duration: Optional[float] = None
    max_processing_time: int = 300


@dataclass(frozen=True)
class CompressionResult:
    """Finished artifact. Ownership passes entirely to the caller."""

    data: bytes
    mime_type: str
    filename: str
    source: SourceMedia

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def compression_ratio(self) -> float:
        return self.size / float(self.source.size or 1)

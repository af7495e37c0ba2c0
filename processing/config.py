"""Encoder profiles and environment-driven runtime settings."""

import os
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

from config.compression_config import VIDEO_CONTAINERS


# Default encoding profile shared by every container
DEFAULT_VIDEO_CONFIG = {
    "preset": "fast",  # x264 speed preset: ultrafast ... veryslow
    "crf": 23,  # Constant quality factor, bitrate acts as a VBV cap
    "bufsize_factor": 2,  # bufsize = bitrate * factor
    "enable_faststart": True,  # moov atom at beginning (mp4 only)
    "max_processing_time": int(os.getenv("MAX_PROCESSING_TIME", "300")),
}


MP4_CONFIG = {
    **DEFAULT_VIDEO_CONFIG,
    "video_codec": VIDEO_CONTAINERS["mp4"]["video_codec"],
    "audio_codec": VIDEO_CONTAINERS["mp4"]["audio_codec"],
}


# VP9 has no x264-style presets; "good" deadline with cpu-used is the closest equivalent
WEBM_CONFIG = {
    **DEFAULT_VIDEO_CONFIG,
    "video_codec": VIDEO_CONTAINERS["webm"]["video_codec"],
    "audio_codec": VIDEO_CONTAINERS["webm"]["audio_codec"],
    "preset": "good",
    "crf": 33,
    "enable_faststart": False,
}


def get_video_config(container: str = "mp4", **overrides: Any) -> Dict[str, Any]:
    """Get encoder configuration for an output container with optional overrides.

    Args:
        container: Output container (mp4, webm)
        **overrides: Override specific config values

    Returns:
        Configuration dictionary

    Examples:
        config = get_video_config()
        config = get_video_config("webm", crf=30)
    """
    profiles = {
        "mp4": MP4_CONFIG,
        "webm": WEBM_CONFIG,
    }

    base_config = profiles.get(container, MP4_CONFIG).copy()
    base_config.update(overrides)

    return base_config


DEFAULT_ENGINE_PATHS = (
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
)


@dataclass(frozen=True)
class Settings:
    max_upload_bytes: int
    engine_sources: Tuple[str, ...]
    engine_load_timeout: float
    api_url: str
    remote_timeout: float
    video_backend: str
    image_max_size_bytes: Optional[int]
    api_keys: Tuple[str, ...]
    client_api_key: Optional[str]


def _split_list(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def get_settings() -> Settings:
    """Read runtime settings from the environment.

    Engine sources are ordered by priority: FFMPEG_BINARY, then FFMPEG_SOURCES,
    then ``ffmpeg`` on PATH, then well-known install locations.
    """
    sources = []
    explicit = os.environ.get("FFMPEG_BINARY", "").strip()
    if explicit:
        sources.append(explicit)
    sources.extend(_split_list(os.environ.get("FFMPEG_SOURCES", "")))
    sources.append("ffmpeg")
    sources.extend(DEFAULT_ENGINE_PATHS)
    # Keep first occurrence of each candidate
    ordered = tuple(dict.fromkeys(sources))

    image_max_size_mb = os.environ.get("IMAGE_MAX_SIZE_MB", "").strip()

    return Settings(
        max_upload_bytes=int(os.environ.get("MAX_UPLOAD_MB", "500")) * 1024 * 1024,
        engine_sources=ordered,
        engine_load_timeout=float(os.environ.get("ENGINE_LOAD_TIMEOUT", "15")),
        api_url=os.environ.get("COMPRESSION_API_URL", "http://localhost:7071").rstrip("/"),
        remote_timeout=float(os.environ.get("REMOTE_TIMEOUT", "600")),
        video_backend=os.environ.get("VIDEO_BACKEND", "auto").lower(),
        image_max_size_bytes=(
            int(float(image_max_size_mb) * 1024 * 1024) if image_max_size_mb else None
        ),
        api_keys=_split_list(os.environ.get("OPTIPIX_API_KEYS", "")),
        client_api_key=os.environ.get("COMPRESSION_API_KEY") or None,
    )

VIDEO_QUALITY_PRESETS = {
    # (video bitrate, audio bitrate)
    "low": ("500k", "64k"),
    "medium": ("1000k", "128k"),
    "high": ("2500k", "192k"),
}

VIDEO_CONTAINERS = {
    "mp4": {"mime_type": "video/mp4", "video_codec": "libx264", "audio_codec": "aac"},
    "webm": {"mime_type": "video/webm", "video_codec": "libvpx-vp9", "audio_codec": "libopus"},
}

# Percent written when the user picks a preset
IMAGE_QUALITY_PRESETS = {
    "low": 50,
    "medium": 80,
    "high": 95,
    "lossless": 100,
}

# Upper bound (inclusive) of each preset when deriving it from a percent
IMAGE_QUALITY_THRESHOLDS = (
    ("low", 60),
    ("medium", 85),
    ("high", 99),
)

IMAGE_FORMATS = {
    "jpeg": {"mime_type": "image/jpeg", "extension": "jpg", "pil_format": "JPEG"},
    "png": {"mime_type": "image/png", "extension": "png", "pil_format": "PNG"},
    "webp": {"mime_type": "image/webp", "extension": "webp", "pil_format": "WEBP"},
}

IMAGE_COMPRESSION_SETTINGS = {
    "jpeg": {"optimize": True},
    "png": {"optimize": True, "compress_level": 9},
    "webp": {"method": 6},
}

# Quality used for the intermediate raster in exact-dimension mode
INTERMEDIATE_QUALITY = 0.95

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif", "image/bmp")
ALLOWED_VIDEO_TYPES = ("video/mp4", "video/webm", "video/quicktime", "video/x-msvideo")

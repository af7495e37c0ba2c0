import io
import logging
import time

from PIL import Image, ImageOps, UnidentifiedImageError

from config.compression_config import (
    IMAGE_COMPRESSION_SETTINGS,
    IMAGE_FORMATS,
    INTERMEDIATE_QUALITY,
)
from processing.errors import EncodeFailure, MetadataUnavailable
from processing.models import CompressionResult, ImageCommand, ImageMetadata, SourceMedia
from processing.resolver import derive_filename


MIN_SIZE_TARGET_QUALITY = 0.1


def _decode(data: bytes) -> Image.Image:
    """Decode bytes into an upright image in RGB, RGBA or L mode."""
    image = Image.open(io.BytesIO(data))
    image.load()
    image = ImageOps.exif_transpose(image)

    if image.mode == "P":
        # Preserve transparency if present
        image = image.convert("RGBA" if "transparency" in image.info else "RGB")
    elif image.mode == "LA":
        image = image.convert("RGBA")
    elif image.mode not in ("RGB", "RGBA", "L"):
        image = image.convert("RGB")
    return image


def probe_image(source: SourceMedia) -> ImageMetadata:
    try:
        image = _decode(source.data)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise MetadataUnavailable(f"Failed to load image {source.name}: {exc}") from exc
    return ImageMetadata(width=image.width, height=image.height)


def _encode(image: Image.Image, output_format: str, quality: float) -> bytes:
    settings = dict(IMAGE_COMPRESSION_SETTINGS[output_format])

    if output_format == "jpeg":
        if image.mode == "RGBA":
            # JPEG has no alpha channel, flatten onto white
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[-1])
            image = background
        elif image.mode != "RGB" and image.mode != "L":
            image = image.convert("RGB")
        settings["quality"] = max(1, int(round(quality * 100)))
    elif output_format == "webp":
        if quality >= 1.0:
            settings["lossless"] = True
        else:
            settings["quality"] = max(1, int(round(quality * 100)))

    output_buffer = io.BytesIO()
    image.save(output_buffer, format=IMAGE_FORMATS[output_format]["pil_format"], **settings)
    return output_buffer.getvalue()


def _compress_fit(data: bytes, command: ImageCommand) -> bytes:
    """Longest-edge bounded recompression. Never upscales."""
    image = _decode(data)

    if command.max_dimension:
        box = (command.max_dimension, command.max_dimension)
        if command.target_size:
            box = command.target_size
        if image.width > box[0] or image.height > box[1]:
            image.thumbnail(box, Image.Resampling.LANCZOS)

    quality = command.quality
    compressed = _encode(image, command.output_format, quality)

    if command.max_size_bytes and command.output_format != "png":
        while len(compressed) > command.max_size_bytes and quality > MIN_SIZE_TARGET_QUALITY:
            quality = max(MIN_SIZE_TARGET_QUALITY, round(quality - 0.1, 2))
            compressed = _encode(image, command.output_format, quality)
        logging.info("Size target %s bytes reached %s bytes at quality %.2f",
                     command.max_size_bytes, len(compressed), quality)

    return compressed


def _resize_exact(data: bytes, command: ImageCommand) -> bytes:
    """Raster-resize to the exact target and re-encode at near-full fidelity."""
    image = _decode(data)
    width = command.exact_width or image.width
    height = command.exact_height or image.height
    resized = image.resize((width, height), Image.Resampling.LANCZOS)
    return _encode(resized, command.output_format, INTERMEDIATE_QUALITY)


def recompress_image(source: SourceMedia, command: ImageCommand) -> CompressionResult:
    """Recompress one image according to a resolved ImageCommand.

    Exact mode first establishes the geometry on an intermediate raster, then
    runs the intermediate through the same fit compressor with no bound so the
    requested quality is applied once.

    Raises:
        EncodeFailure: the source cannot be decoded or the encoder produced nothing
    """
    start_time = time.time()
    try:
        if command.mode == "exact":
            intermediate = _resize_exact(source.data, command)
            compressed = _compress_fit(intermediate, command)
        else:
            compressed = _compress_fit(source.data, command)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logging.error("Image compression failed for %s: %s", source.name, str(exc))
        raise EncodeFailure(f"Failed to compress image {source.name}: {exc}") from exc

    if not compressed:
        raise EncodeFailure(f"Failed to compress image {source.name}: encoder produced no output")

    result = CompressionResult(
        data=compressed,
        mime_type=command.mime_type,
        filename=derive_filename(source.name, command.extension),
        source=source,
    )
    logging.info(
        "Compressed image %s (%s mode): %s -> %s bytes (ratio %.2f) in %.2fs",
        source.name, command.mode, source.size, result.size,
        result.compression_ratio, time.time() - start_time,
    )
    return result

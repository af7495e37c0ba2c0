import asyncio
import io
import os

import pytest
from PIL import Image

from conftest import make_image_source
from processing import compress_image, compress_images
from processing.errors import EncodeFailure, MetadataUnavailable
from processing.image import probe_image, recompress_image
from processing.models import ImageOptions, SourceMedia
from processing.resolver import resolve_image_command


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def test_png_to_webp_scenario() -> None:
    source = make_image_source("photo.png")
    options = ImageOptions(output_format="webp", resize_enabled=False, limit_max_dimensions=False)
    result = asyncio.run(compress_image(source, options.with_quality_percent(80)))

    assert result.filename == "photo_compressed.webp"
    assert result.mime_type == "image/webp"
    assert result.size == len(result.data)
    assert result.source is source
    decoded = decode(result.data)
    assert decoded.format == "WEBP"
    assert decoded.size == (400, 300)


@pytest.mark.parametrize("target", [(123, 456), (400, 10), (1000, 1000)])
def test_exact_dimension_mode_hits_target(target) -> None:
    source = make_image_source("wide.png", size=(400, 300))
    options = ImageOptions(
        output_format="jpeg",
        resize_enabled=True,
        width=target[0],
        height=target[1],
        maintain_aspect_ratio=False,
    )
    result = asyncio.run(compress_image(source, options))
    assert decode(result.data).size == target
    assert result.filename == "wide_compressed.jpg"


def test_exact_mode_fills_missing_edge_from_source() -> None:
    source = make_image_source(size=(400, 300))
    options = ImageOptions(output_format="png", resize_enabled=True, width=200, maintain_aspect_ratio=False)
    result = asyncio.run(compress_image(source, options))
    assert decode(result.data).size == (200, 300)


def test_aspect_resize_bounds_longest_edge() -> None:
    source = make_image_source(size=(400, 300))
    options = ImageOptions(output_format="jpeg", resize_enabled=True, width=100, height=50)
    result = asyncio.run(compress_image(source, options))
    assert decode(result.data).size == (100, 75)


def test_aspect_resize_never_upscales() -> None:
    source = make_image_source(size=(400, 300))
    options = ImageOptions(output_format="jpeg", resize_enabled=True, width=2000)
    result = asyncio.run(compress_image(source, options))
    assert decode(result.data).size == (400, 300)


def test_limit_max_dimensions_with_aspect_ratio() -> None:
    source = make_image_source(size=(800, 600))
    options = ImageOptions(
        output_format="webp", limit_max_dimensions=True, max_width=200, max_height=100
    )
    result = asyncio.run(compress_image(source, options))
    width, height = decode(result.data).size
    assert width <= 200 and height <= 100
    assert width / height == pytest.approx(800 / 600, rel=0.02)


def test_limit_max_dimensions_on_undecodable_source() -> None:
    source = SourceMedia(data=b"definitely not an image", mime_type="image/png", name="broken.png")
    options = ImageOptions(limit_max_dimensions=True, max_width=100)
    with pytest.raises(MetadataUnavailable):
        asyncio.run(compress_image(source, options))


def test_corrupt_source_is_encode_failure() -> None:
    source = SourceMedia(data=b"\x89PNG garbage", mime_type="image/png", name="broken.png")
    with pytest.raises(EncodeFailure) as exc:
        asyncio.run(compress_image(source, ImageOptions()))
    assert "broken.png" in str(exc.value)


def test_transparent_png_to_jpeg_is_flattened() -> None:
    source = make_image_source(mode="RGBA", color=(0, 0, 255, 0))
    result = asyncio.run(compress_image(source, ImageOptions(output_format="jpeg")))
    decoded = decode(result.data)
    assert decoded.mode == "RGB"
    assert decoded.getpixel((10, 10))[0] > 240


def test_lossless_webp_keeps_pixels() -> None:
    source = make_image_source(color=(12, 34, 56))
    options = ImageOptions(output_format="webp").with_quality_preset("lossless")
    result = asyncio.run(compress_image(source, options))
    assert decode(result.data).convert("RGB").getpixel((5, 5)) == (12, 34, 56)


def test_size_target_lowers_quality() -> None:
    noise = Image.frombytes("RGB", (256, 256), os.urandom(256 * 256 * 3))
    buffer = io.BytesIO()
    noise.save(buffer, format="PNG")
    source = SourceMedia(data=buffer.getvalue(), mime_type="image/png", name="noise.png")

    options = ImageOptions(output_format="jpeg").with_quality_percent(100)
    unconstrained = recompress_image(source, resolve_image_command(options))
    constrained = recompress_image(
        source, resolve_image_command(options, max_size_bytes=unconstrained.size // 4)
    )
    assert constrained.size < unconstrained.size


def test_probe_image_reports_size() -> None:
    metadata = probe_image(make_image_source(size=(64, 48)))
    assert (metadata.width, metadata.height) == (64, 48)


def test_batch_keeps_siblings_on_failure() -> None:
    good = make_image_source("good.png")
    bad = SourceMedia(data=b"nope", mime_type="image/png", name="bad.png")
    outcomes = asyncio.run(compress_images([good, bad], ImageOptions(output_format="png")))

    assert outcomes[0].filename == "good_compressed.png"
    assert isinstance(outcomes[1], EncodeFailure)

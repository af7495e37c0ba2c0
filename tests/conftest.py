import io
from typing import Dict, List, Optional

import pytest
from PIL import Image

from processing.engine import EngineSession
from processing.errors import MetadataUnavailable, TranscodeFailure
from processing.models import SourceMedia


def make_image_bytes(fmt: str = "PNG", size=(400, 300), mode: str = "RGB", color=(200, 30, 30)) -> bytes:
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_image_source(name: str = "photo.png", fmt: str = "PNG", size=(400, 300), **kwargs) -> SourceMedia:
    mime = {"PNG": "image/png", "JPEG": "image/jpeg", "WEBP": "image/webp"}[fmt]
    return SourceMedia(data=make_image_bytes(fmt, size, **kwargs), mime_type=mime, name=name)


class FakeEngine:
    """In-memory stand-in for FFmpegEngine."""

    def __init__(
        self,
        output: bytes = b"compressed-video-bytes",
        fail: bool = False,
        produce_output: bool = True,
        probe_info: Optional[Dict] = None,
    ) -> None:
        self.output = output
        self.fail = fail
        self.produce_output = produce_output
        self.probe_info = probe_info
        self.files: Dict[str, bytes] = {}
        self.calls: List[List[str]] = []
        self.max_files_seen = 0

    def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = data
        self.max_files_seen = max(self.max_files_seen, len(self.files))

    def read_file(self, name: str) -> bytes:
        if name not in self.files:
            raise FileNotFoundError(name)
        return self.files[name]

    def delete_file(self, name: str) -> None:
        self.files.pop(name, None)

    def list_files(self) -> List[str]:
        return sorted(self.files)

    async def execute(self, args, on_progress=None, timeout=None) -> None:
        self.calls.append(list(args))
        if on_progress:
            on_progress(5.0)
            on_progress(10.0)
        if self.fail:
            raise TranscodeFailure("FFmpeg failed: Unknown encoder")
        if self.produce_output:
            self.files[args[-1]] = self.output

    async def probe(self, name: str) -> Dict:
        if self.probe_info is None:
            raise MetadataUnavailable("ffprobe is not available")
        return self.probe_info


def session_for(engine) -> EngineSession:
    async def loader(source, timeout):
        return engine

    return EngineSession(sources=["fake-ffmpeg"], loader=loader, load_timeout=1.0)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "FFMPEG_BINARY",
        "FFMPEG_SOURCES",
        "VIDEO_BACKEND",
        "IMAGE_MAX_SIZE_MB",
        "OPTIPIX_API_KEYS",
        "COMPRESSION_API_KEY",
        "COMPRESSION_API_URL",
        "MAX_UPLOAD_MB",
    ):
        monkeypatch.delenv(name, raising=False)

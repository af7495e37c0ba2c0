import abc
import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from processing.engine import EngineSession, get_session
from processing.errors import MetadataUnavailable, TranscodeFailure
from processing.models import CompressionResult, SourceMedia, VideoCommand, VideoMetadata
from processing.resolver import derive_filename


ProgressCallback = Callable[[int], None]

# Caller-visible progress checkpoints (percent)
PROGRESS_ENGINE_READY = 5
PROGRESS_INPUT_WRITTEN = 20
PROGRESS_EXEC_START = 30
PROGRESS_EXEC_END = 85
PROGRESS_OUTPUT_READ = 90
PROGRESS_DONE = 100


class ProgressTracker:
    """Forwards integer percents to an optional callback, never going backwards."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self._callback = callback
        self.last = -1

    def report(self, percent: float) -> None:
        value = int(min(100, max(0, percent)))
        if value <= self.last:
            return
        self.last = value
        if self._callback is not None:
            self._callback(value)

    def report_execution(self, seconds_done: float, duration: Optional[float]) -> None:
        """Interpolate ffmpeg's native progress into the execution window."""
        if not duration or duration <= 0:
            return
        fraction = min(1.0, max(0.0, seconds_done / duration))
        span = PROGRESS_EXEC_END - PROGRESS_EXEC_START
        self.report(PROGRESS_EXEC_START + span * fraction)


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse ffprobe's ``num/den`` rational (or a plain number) into a float.

    A zero denominator yields 0.0; anything unparsable yields None.
    """
    if not value:
        return None
    numerator, _, denominator = value.strip().partition("/")
    try:
        num = float(int(numerator))
        den = int(denominator) if denominator else 1
    except ValueError:
        return None
    if den == 0:
        return 0.0
    return num / den


def _find_stream(info: Dict[str, Any], codec_type: str) -> Dict[str, Any]:
    for stream in info.get("streams", []):
        if stream.get("codec_type") == codec_type:
            return stream
    return {}


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def video_metadata_from_probe(info: Dict[str, Any]) -> VideoMetadata:
    stream = _find_stream(info, "video")
    if not stream:
        raise MetadataUnavailable("No video stream found")
    duration = _to_float(info.get("format", {}).get("duration"))
    if duration is None:
        duration = _to_float(stream.get("duration"))
    return VideoMetadata(
        duration=duration,
        width=_to_int(stream.get("width")),
        height=_to_int(stream.get("height")),
    )


def video_info_from_probe(info: Dict[str, Any]) -> Dict[str, Any]:
    """Shape ffprobe output as the ``/api/video-info`` response body."""
    fmt = info.get("format", {})
    video_stream = _find_stream(info, "video")
    audio_stream = _find_stream(info, "audio")
    return {
        "duration": _to_float(fmt.get("duration")),
        "size": _to_int(fmt.get("size")),
        "bitrate": _to_int(fmt.get("bit_rate")),
        "format": fmt.get("format_name"),
        "video": {
            "codec": video_stream.get("codec_name"),
            "width": video_stream.get("width"),
            "height": video_stream.get("height"),
            "fps": parse_frame_rate(video_stream.get("r_frame_rate")) or 0,
            "bitrate": _to_int(video_stream.get("bit_rate")),
        },
        "audio": {
            "codec": audio_stream.get("codec_name"),
            "bitrate": _to_int(audio_stream.get("bit_rate")),
            "sampleRate": _to_int(audio_stream.get("sample_rate")),
        },
    }


def build_ffmpeg_args(command: VideoCommand, input_name: str, output_name: str) -> List[str]:
    """Build the ffmpeg argument list (without the binary) for a resolved command.

    Args:
        command: Resolved video command
        input_name: Input name in the engine's working storage
        output_name: Output name in the engine's working storage

    Returns:
        FFmpeg arguments as list of strings
    """
    args: List[str] = ["-i", input_name]

    args.extend([
        "-c:v", command.video_codec,
        "-b:v", command.video_bitrate,
        "-maxrate", command.video_bitrate,
        "-bufsize", command.bufsize,
    ])
    if command.video_codec == "libx264":
        args.extend(["-preset", command.encoder_preset])
    else:
        args.extend(["-deadline", command.encoder_preset, "-row-mt", "1"])
    args.extend(["-crf", str(command.crf)])

    args.extend([
        "-c:a", command.audio_codec,
        "-b:a", command.audio_bitrate,
    ])

    if command.scale:
        width, height = command.scale
        args.extend(["-vf", f"scale={width}:{height}"])

    args.extend(["-f", command.container])

    # Streaming optimization
    if command.faststart:
        args.extend(["-movflags", "+faststart"])

    args.extend(["-y", output_name])
    return args


class VideoBackend(abc.ABC):
    """One way of running a video transcode. Implementations are interchangeable."""

    name = "abstract"
    reports_progress = True

    @abc.abstractmethod
    async def compress(
        self,
        source: SourceMedia,
        command: VideoCommand,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CompressionResult:
        """Transcode ``source`` according to ``command``."""

    @abc.abstractmethod
    async def probe(self, source: SourceMedia) -> VideoMetadata:
        """Return duration and intrinsic dimensions of ``source``."""


class EmbeddedVideoBackend(VideoBackend):
    """Runs transcodes through the process-wide embedded engine session.

    Each call uses its own working-storage names, so concurrent calls on the
    shared engine never collide, and both entries are removed on every exit path.
    """

    name = "embedded"

    def __init__(self, session: Optional[EngineSession] = None) -> None:
        self.session = session if session is not None else get_session()

    async def compress(
        self,
        source: SourceMedia,
        command: VideoCommand,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CompressionResult:
        logging.info("=== VIDEO COMPRESSION STARTED for %s ===", source.name)
        start_time = time.time()
        tracker = ProgressTracker(on_progress)

        engine = await self.session.acquire()
        tracker.report(PROGRESS_ENGINE_READY)

        call_id = uuid.uuid4().hex
        input_name = f"input-{call_id}.{source.extension or 'bin'}"
        output_name = f"output-{call_id}.{command.container}"

        try:
            try:
                await asyncio.to_thread(engine.write_file, input_name, source.data)
            except OSError as exc:
                raise TranscodeFailure(f"Could not write input to working storage: {exc}") from exc
            tracker.report(PROGRESS_INPUT_WRITTEN)

            args = build_ffmpeg_args(command, input_name, output_name)
            tracker.report(PROGRESS_EXEC_START)
            await engine.execute(
                args,
                on_progress=lambda seconds: tracker.report_execution(seconds, command.duration),
                timeout=command.max_processing_time,
            )
            tracker.report(PROGRESS_EXEC_END)

            try:
                data = await asyncio.to_thread(engine.read_file, output_name)
            except FileNotFoundError:
                raise TranscodeFailure("FFmpeg finished without producing an output file") from None
            except OSError as exc:
                raise TranscodeFailure(f"Could not read output from working storage: {exc}") from exc
            if not data:
                raise TranscodeFailure("FFmpeg produced an empty output file")
            tracker.report(PROGRESS_OUTPUT_READ)
        finally:
            engine.delete_file(input_name)
            engine.delete_file(output_name)

        result = CompressionResult(
            data=data,
            mime_type=command.mime_type,
            filename=derive_filename(source.name, command.container),
            source=source,
        )
        tracker.report(PROGRESS_DONE)

        logging.info("Original size: %s, Compressed size: %s, Ratio: %s",
                     source.size, result.size, result.compression_ratio)
        logging.info("=== VIDEO COMPRESSION COMPLETED for %s in %.2fs ===",
                     source.name, time.time() - start_time)
        return result

    async def _probe_raw(self, source: SourceMedia) -> Dict[str, Any]:
        engine = await self.session.acquire()
        probe_name = f"probe-{uuid.uuid4().hex}.{source.extension or 'bin'}"
        try:
            try:
                await asyncio.to_thread(engine.write_file, probe_name, source.data)
            except OSError as exc:
                raise MetadataUnavailable(f"Could not write probe input to working storage: {exc}") from exc
            return await engine.probe(probe_name)
        finally:
            engine.delete_file(probe_name)

    async def probe(self, source: SourceMedia) -> VideoMetadata:
        return video_metadata_from_probe(await self._probe_raw(source))

    async def probe_details(self, source: SourceMedia) -> Dict[str, Any]:
        return video_info_from_probe(await self._probe_raw(source))

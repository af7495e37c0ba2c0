"""Embedded FFmpeg engine and the process-wide session that owns it.

The engine is loaded once, from the first binary source that answers
``-version``, and then reused for every call. All work happens inside a
private working directory; callers address files in it by bare name.
"""

import asyncio
import enum
import json
import logging
import os
import shutil
import tempfile
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from processing.config import get_settings
from processing.errors import EngineInitFailure, MetadataUnavailable, TranscodeFailure


PROBE_TIMEOUT = 30


class EngineState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    INIT_FAILED = "init_failed"


def resolve_source(source: str) -> Optional[str]:
    """Resolve an engine source (path or command name) to an executable path."""
    if os.path.dirname(source):
        if os.path.isfile(source) and os.access(source, os.X_OK):
            return source
        return None
    return shutil.which(source)


def _find_ffprobe(binary: str) -> Optional[str]:
    sibling = os.path.join(os.path.dirname(binary), "ffprobe")
    if os.path.isfile(sibling) and os.access(sibling, os.X_OK):
        return sibling
    return shutil.which("ffprobe")


class FFmpegEngine:
    """A loaded ffmpeg binary plus its isolated working storage."""

    def __init__(self, binary: str, ffprobe: Optional[str] = None, workdir: Optional[str] = None) -> None:
        self.binary = binary
        self.ffprobe = ffprobe if ffprobe is not None else _find_ffprobe(binary)
        self.workdir = workdir or tempfile.mkdtemp(prefix="optipix-engine-")

    def _path(self, name: str) -> str:
        if not name or os.path.basename(name) != name or name in (".", ".."):
            raise ValueError(f"Invalid working storage name: {name!r}")
        return os.path.join(self.workdir, name)

    def write_file(self, name: str, data: bytes) -> None:
        with open(self._path(name), "wb") as fh:
            fh.write(data)

    def read_file(self, name: str) -> bytes:
        with open(self._path(name), "rb") as fh:
            return fh.read()

    def delete_file(self, name: str) -> None:
        try:
            os.unlink(self._path(name))
        except FileNotFoundError:
            pass

    def list_files(self) -> List[str]:
        return sorted(os.listdir(self.workdir))

    async def execute(
        self,
        args: Sequence[str],
        on_progress: Optional[Callable[[float], None]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Run ffmpeg with ``args`` inside the working storage.

        ``on_progress`` receives the encoded output time in seconds as ffmpeg
        reports it.

        Raises:
            TranscodeFailure: non-zero exit or the processing time limit was exceeded
        """
        cmd = [self.binary, "-hide_banner", "-nostdin", "-progress", "pipe:1", "-nostats", *args]
        logging.info("Running FFmpeg: %s", " ".join(cmd))

        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=self.workdir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        async def _read_progress() -> None:
            async for raw in process.stdout:
                key, _, value = raw.decode("utf-8", errors="replace").strip().partition("=")
                if key in ("out_time_us", "out_time_ms") and value.isdigit() and on_progress:
                    # ffmpeg reports both keys in microseconds
                    on_progress(int(value) / 1_000_000)

        try:
            _, stderr = await asyncio.wait_for(
                asyncio.gather(_read_progress(), process.stderr.read()), timeout
            )
            await process.wait()
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TranscodeFailure(f"FFmpeg exceeded the processing time limit of {timeout}s") from None

        logging.info("FFmpeg return code: %s", process.returncode)
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            logging.error("FFmpeg stderr: %s", message)
            tail = "\n".join(message.splitlines()[-5:])
            raise TranscodeFailure(f"FFmpeg failed: {tail}")

    async def probe(self, name: str) -> Dict[str, Any]:
        """Return ffprobe's JSON description (format + streams) of a stored file.

        Raises:
            MetadataUnavailable: no ffprobe binary, probe error, or unparsable output
        """
        if not self.ffprobe:
            raise MetadataUnavailable("ffprobe is not available next to the engine binary or on PATH")

        cmd = [
            self.ffprobe,
            "-v", "error",
            "-show_format",
            "-show_streams",
            "-of", "json",
            self._path(name),
        ]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), PROBE_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise MetadataUnavailable("ffprobe timed out") from None

        if process.returncode != 0:
            logging.warning("ffprobe failed: %s", stderr.decode("utf-8", errors="replace"))
            raise MetadataUnavailable(
                f"Failed to get video info: {stderr.decode('utf-8', errors='replace').strip()}"
            )

        try:
            return json.loads(stdout)
        except ValueError as exc:
            raise MetadataUnavailable(f"Failed to parse ffprobe output: {exc}") from exc

    def close(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)


async def load_engine(source: str, timeout: float) -> FFmpegEngine:
    """Load the engine from one source.

    Raises:
        EngineInitFailure: the source does not resolve or does not run
    """
    binary = resolve_source(source)
    if not binary:
        raise EngineInitFailure(f"{source}: not found")

    try:
        process = await asyncio.create_subprocess_exec(
            binary, "-version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise EngineInitFailure(f"{source}: {exc}") from exc

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise EngineInitFailure(f"{source}: timed out after {timeout}s") from None

    if process.returncode != 0:
        raise EngineInitFailure(f"{source}: exited with code {process.returncode}")

    version = stdout.decode("utf-8", errors="replace").splitlines()[:1]
    logging.info("Loaded codec engine from %s (%s)", binary, version[0] if version else "unknown version")
    return FFmpegEngine(binary)


Loader = Callable[[str, float], Awaitable[Any]]


class EngineSession:
    """Lazily-initialized, reusable handle to the codec engine.

    Concurrent ``acquire()`` calls during initialization all await the same
    pending future. A failed initialization is not sticky: the next call
    starts over from the first source.
    """

    def __init__(
        self,
        sources: Optional[Sequence[str]] = None,
        loader: Loader = load_engine,
        load_timeout: Optional[float] = None,
    ) -> None:
        settings = None
        if sources is None or load_timeout is None:
            settings = get_settings()
        self.sources = tuple(sources) if sources is not None else settings.engine_sources
        self.load_timeout = load_timeout if load_timeout is not None else settings.engine_load_timeout
        self._loader = loader
        self._state = EngineState.UNINITIALIZED
        self._engine = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def state(self) -> EngineState:
        return self._state

    async def acquire(self):
        if self._state is EngineState.READY:
            return self._engine

        if self._pending is None:
            self._state = EngineState.INITIALIZING
            self._pending = asyncio.ensure_future(self._initialize())

        # Shielded so one cancelled caller does not abort the shared load
        return await asyncio.shield(self._pending)

    async def _initialize(self):
        errors = []
        try:
            for source in self.sources:
                try:
                    engine = await self._loader(source, self.load_timeout)
                except EngineInitFailure as exc:
                    logging.warning("Codec engine source failed, trying next: %s", exc.message)
                    errors.append(exc.message)
                    continue

                self._engine = engine
                self._state = EngineState.READY
                return engine

            self._state = EngineState.INIT_FAILED
            detail = "; ".join(errors) if errors else "no sources configured"
            raise EngineInitFailure(f"Failed to initialize codec engine from any source ({detail})")
        finally:
            self._pending = None

    def reset(self) -> None:
        """Tear down the engine so the next acquire() loads it again."""
        if self._engine is not None and hasattr(self._engine, "close"):
            self._engine.close()
        self._engine = None
        self._pending = None
        self._state = EngineState.UNINITIALIZED


_session: Optional[EngineSession] = None


def get_session() -> EngineSession:
    """Return the process-wide engine session, creating it on first use."""
    global _session
    if _session is None:
        _session = EngineSession()
    return _session


def embedded_engine_supported(sources: Optional[Sequence[str]] = None) -> bool:
    """Capability check: a source resolves and temporary storage is writable.

    Does not load the engine.
    """
    if sources is None:
        sources = get_settings().engine_sources
    if not os.access(tempfile.gettempdir(), os.W_OK):
        return False
    return any(resolve_source(source) for source in sources)

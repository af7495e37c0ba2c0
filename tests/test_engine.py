import asyncio
import os
import stat

import pytest

from processing.engine import (
    EngineSession,
    EngineState,
    FFmpegEngine,
    embedded_engine_supported,
    load_engine,
    resolve_source,
)
from processing.errors import EngineInitFailure, MetadataUnavailable, TranscodeFailure


def write_script(path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


class RecordingLoader:
    def __init__(self, working=(), delay: float = 0.0) -> None:
        self.working = set(working)
        self.delay = delay
        self.attempts = []

    async def __call__(self, source, timeout):
        self.attempts.append(source)
        if self.delay:
            await asyncio.sleep(self.delay)
        if source not in self.working:
            raise EngineInitFailure(f"{source}: not found")
        return f"engine-from-{source}"


def test_all_sources_failing_is_engine_init_failure() -> None:
    loader = RecordingLoader()
    session = EngineSession(sources=["primary", "mirror", "fallback"], loader=loader, load_timeout=1)

    with pytest.raises(EngineInitFailure) as exc:
        asyncio.run(session.acquire())

    assert loader.attempts == ["primary", "mirror", "fallback"]
    assert session.state is EngineState.INIT_FAILED
    assert "initialize codec engine" in exc.value.message
    assert not isinstance(exc.value, TranscodeFailure)


def test_falls_through_to_next_source() -> None:
    loader = RecordingLoader(working={"fallback"})
    session = EngineSession(sources=["primary", "mirror", "fallback"], loader=loader, load_timeout=1)

    engine = asyncio.run(session.acquire())

    assert engine == "engine-from-fallback"
    assert loader.attempts == ["primary", "mirror", "fallback"]
    assert session.state is EngineState.READY


def test_failed_init_is_retried_from_scratch() -> None:
    loader = RecordingLoader()
    session = EngineSession(sources=["primary", "mirror"], loader=loader, load_timeout=1)
    with pytest.raises(EngineInitFailure):
        asyncio.run(session.acquire())

    loader.working.add("mirror")
    assert asyncio.run(session.acquire()) == "engine-from-mirror"
    assert loader.attempts == ["primary", "mirror", "primary", "mirror"]


def test_concurrent_acquire_shares_one_initialization() -> None:
    loader = RecordingLoader(working={"primary"}, delay=0.05)
    session = EngineSession(sources=["primary"], loader=loader, load_timeout=1)

    async def run():
        assert session.state is EngineState.UNINITIALIZED
        first = asyncio.ensure_future(session.acquire())
        await asyncio.sleep(0)
        assert session.state is EngineState.INITIALIZING
        rest = [session.acquire() for _ in range(4)]
        return await asyncio.gather(first, *rest)

    engines = asyncio.run(run())
    assert engines == ["engine-from-primary"] * 5
    assert loader.attempts == ["primary"]


def test_ready_session_is_reused_until_reset() -> None:
    loader = RecordingLoader(working={"primary"})
    session = EngineSession(sources=["primary"], loader=loader, load_timeout=1)

    asyncio.run(session.acquire())
    asyncio.run(session.acquire())
    assert loader.attempts == ["primary"]

    session.reset()
    assert session.state is EngineState.UNINITIALIZED
    asyncio.run(session.acquire())
    assert loader.attempts == ["primary", "primary"]


def test_no_sources_configured() -> None:
    session = EngineSession(sources=[], loader=RecordingLoader(), load_timeout=1)
    with pytest.raises(EngineInitFailure) as exc:
        asyncio.run(session.acquire())
    assert "no sources configured" in exc.value.message


def test_resolve_source(tmp_path) -> None:
    script = write_script(tmp_path / "ffmpeg", "exit 0")
    plain = tmp_path / "not-executable"
    plain.write_text("")

    assert resolve_source(script) == script
    assert resolve_source(str(plain)) is None
    assert resolve_source(str(tmp_path / "missing")) is None
    assert resolve_source("optipix-no-such-binary-on-path") is None


def test_embedded_engine_supported(tmp_path) -> None:
    script = write_script(tmp_path / "ffmpeg", "exit 0")
    assert embedded_engine_supported([str(tmp_path / "missing"), script]) is True
    assert embedded_engine_supported([str(tmp_path / "missing")]) is False


def test_load_engine_runs_version_check(tmp_path) -> None:
    good = write_script(tmp_path / "ffmpeg", 'echo "ffmpeg version 6.1-test"')
    engine = asyncio.run(load_engine(good, timeout=5))
    try:
        assert isinstance(engine, FFmpegEngine)
        assert engine.binary == good
        assert os.path.isdir(engine.workdir)
    finally:
        engine.close()


def test_load_engine_rejects_broken_binary(tmp_path) -> None:
    broken = write_script(tmp_path / "ffmpeg", "exit 3")
    with pytest.raises(EngineInitFailure) as exc:
        asyncio.run(load_engine(broken, timeout=5))
    assert "exited with code 3" in exc.value.message


def test_load_engine_times_out(tmp_path) -> None:
    slow = write_script(tmp_path / "ffmpeg", "exec sleep 5")
    with pytest.raises(EngineInitFailure) as exc:
        asyncio.run(load_engine(slow, timeout=0.2))
    assert "timed out" in exc.value.message


def test_working_storage_operations(tmp_path) -> None:
    engine = FFmpegEngine("/bin/true", ffprobe="", workdir=str(tmp_path))
    engine.write_file("input-1.mp4", b"abc")
    assert engine.list_files() == ["input-1.mp4"]
    assert engine.read_file("input-1.mp4") == b"abc"

    engine.delete_file("input-1.mp4")
    engine.delete_file("input-1.mp4")
    assert engine.list_files() == []

    with pytest.raises(ValueError):
        engine.write_file("../escape.mp4", b"")


def test_execute_reports_progress(tmp_path) -> None:
    binary = write_script(
        tmp_path / "ffmpeg",
        "echo out_time_us=1500000\necho out_time_ms=N/A\necho out_time_us=3000000\necho progress=end",
    )
    engine = FFmpegEngine(binary, ffprobe="", workdir=str(tmp_path))
    seen = []
    asyncio.run(engine.execute(["-i", "in.mp4", "out.mp4"], on_progress=seen.append, timeout=5))
    assert seen == [1.5, 3.0]


def test_execute_failure_carries_stderr(tmp_path) -> None:
    binary = write_script(tmp_path / "ffmpeg", 'echo "Unknown encoder libfoo" >&2\nexit 1')
    engine = FFmpegEngine(binary, ffprobe="", workdir=str(tmp_path))
    with pytest.raises(TranscodeFailure) as exc:
        asyncio.run(engine.execute(["-i", "in.mp4", "out.mp4"], timeout=5))
    assert "Unknown encoder libfoo" in exc.value.message


def test_execute_time_limit(tmp_path) -> None:
    binary = write_script(tmp_path / "ffmpeg", "exec sleep 5")
    engine = FFmpegEngine(binary, ffprobe="", workdir=str(tmp_path))
    with pytest.raises(TranscodeFailure) as exc:
        asyncio.run(engine.execute(["-i", "in.mp4", "out.mp4"], timeout=0.2))
    assert "processing time limit" in exc.value.message


def test_probe_without_ffprobe(tmp_path) -> None:
    engine = FFmpegEngine("/bin/true", ffprobe="", workdir=str(tmp_path))
    engine.write_file("clip.mp4", b"abc")
    with pytest.raises(MetadataUnavailable):
        asyncio.run(engine.probe("clip.mp4"))


def test_probe_parses_json(tmp_path) -> None:
    ffprobe = write_script(
        tmp_path / "ffprobe",
        "echo '{\"format\": {\"duration\": \"4.0\"}, \"streams\": []}'",
    )
    engine = FFmpegEngine("/bin/true", ffprobe=ffprobe, workdir=str(tmp_path))
    engine.write_file("clip.mp4", b"abc")
    assert asyncio.run(engine.probe("clip.mp4"))["format"]["duration"] == "4.0"

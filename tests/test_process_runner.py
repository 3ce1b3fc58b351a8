import json
import os

import pytest

from app.core.errors import ExecutionFailed, MalformedOutput, ProcessTimeout
from app.services.ytdlp import ProcessRunner, YTDLPCommandBuilder, stderr_tail
from helpers import STUB_COMMAND, SOURCE_URL, has_pid, payload, pid_alive, read_pid, wait_until


def test_info_command_keeps_url_after_separator():
    args = YTDLPCommandBuilder.build_info_command("https://x.example/-o")
    assert args[0] == "--dump-json"
    assert args[-2:] == ["--", "https://x.example/-o"]
    assert "--no-playlist" in args


def test_fetch_command_selector():
    args = YTDLPCommandBuilder.build_fetch_command(SOURCE_URL, "137[acodec!=none]/137+bestaudio/137")
    assert args[:2] == ["-f", "137[acodec!=none]/137+bestaudio/137"]
    assert args[args.index("--merge-output-format") + 1] == "mp4"
    assert args[-1] == SOURCE_URL


def test_stderr_tail_keeps_last_lines():
    lines = [f"line {i}" for i in range(20)] + [""]
    assert stderr_tail(lines) == "\n".join(f"line {i}" for i in range(15, 20))


@pytest.mark.asyncio
async def test_capture_json(runner):
    info = await runner.run_capturing_json(YTDLPCommandBuilder.build_info_command(SOURCE_URL))
    assert info["title"] == "Stub Video"


@pytest.mark.asyncio
async def test_capture_json_malformed(runner, monkeypatch):
    monkeypatch.setenv("STUB_MALFORMED", "1")
    with pytest.raises(MalformedOutput):
        await runner.run_capturing_json(["--dump-json", "--", SOURCE_URL])


@pytest.mark.asyncio
async def test_capture_json_nonzero_exit(runner, monkeypatch):
    monkeypatch.setenv("STUB_EXIT", "2")
    monkeypatch.setenv("STUB_STDERR", "ERROR: [generic] Unsupported URL")
    with pytest.raises(ExecutionFailed) as exc_info:
        await runner.run_capturing_json(["--dump-json", "--", SOURCE_URL])
    assert exc_info.value.exit_code == 2
    assert "Unsupported URL" in exc_info.value.stderr_tail
    # Clients only ever see the exit code
    assert "Unsupported" not in str(exc_info.value.params)


@pytest.mark.asyncio
async def test_capture_json_timeout(monkeypatch, tmp_path):
    pid_file = tmp_path / "pid"
    monkeypatch.setenv("STUB_SLEEP", "30")
    monkeypatch.setenv("STUB_PID_FILE", str(pid_file))
    runner = ProcessRunner(STUB_COMMAND, timeout=20, info_timeout=1.5, kill_grace=0.5)

    with pytest.raises(ProcessTimeout):
        await runner.run_capturing_json(["--dump-json", "--", SOURCE_URL])

    assert not pid_alive(read_pid(pid_file))


@pytest.mark.asyncio
async def test_missing_executable():
    runner = ProcessRunner(["/nonexistent/yt-dlp"], timeout=5, info_timeout=5)
    with pytest.raises(ExecutionFailed) as exc_info:
        await runner.run_capturing_json(["--dump-json", "--", SOURCE_URL])
    assert exc_info.value.exit_code == -1


@pytest.mark.asyncio
async def test_stream_to_file(runner, tmp_path, monkeypatch):
    log_file = tmp_path / "argv.log"
    monkeypatch.setenv("STUB_BYTES", "5000")
    monkeypatch.setenv("STUB_EXT", "webm")
    monkeypatch.setenv("STUB_LOG", str(log_file))
    destination = str(tmp_path / "job.%(ext)s")

    handle = await runner.run_streaming_to_file(["-f", "18", "--", SOURCE_URL], destination)
    assert await handle.wait() == 0

    with open(tmp_path / "job.webm", "rb") as f:
        assert f.read() == payload(5000)

    argv = json.loads(log_file.read_text().splitlines()[0])
    assert argv[:2] == ["-o", destination]
    assert argv[-2:] == ["--", SOURCE_URL]


@pytest.mark.asyncio
async def test_stream_collects_stderr(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("STUB_EXIT", "1")
    monkeypatch.setenv("STUB_STDERR", "ERROR: Video unavailable")
    seen = []

    handle = await runner.run_streaming_to_file(
        ["--", SOURCE_URL], str(tmp_path / "job.%(ext)s"), on_stderr=seen.append
    )

    assert await handle.wait() == 1
    assert "ERROR: Video unavailable" in handle.stderr_tail
    assert seen == ["ERROR: Video unavailable"]


@pytest.mark.asyncio
async def test_destination_in_use(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("STUB_SLEEP", "30")
    destination = str(tmp_path / "job.%(ext)s")

    handle = await runner.run_streaming_to_file(["--", SOURCE_URL], destination)
    try:
        with pytest.raises(RuntimeError):
            await runner.run_streaming_to_file(["--", SOURCE_URL], destination)
    finally:
        await handle.cancel()

    # Freed once the first process is gone
    monkeypatch.setenv("STUB_SLEEP", "0")
    second = await runner.run_streaming_to_file(["--", SOURCE_URL], destination)
    assert await second.wait() == 0


@pytest.mark.asyncio
async def test_cancel_kills_process_tree(runner, tmp_path, monkeypatch):
    pid_file = tmp_path / "pid"
    child_pid_file = tmp_path / "child.pid"
    monkeypatch.setenv("STUB_SLEEP", "30")
    monkeypatch.setenv("STUB_PID_FILE", str(pid_file))
    monkeypatch.setenv("STUB_SPAWN_CHILD", "1")
    monkeypatch.setenv("STUB_CHILD_PID_FILE", str(child_pid_file))

    handle = await runner.run_streaming_to_file(["--", SOURCE_URL], str(tmp_path / "job.%(ext)s"))
    assert await wait_until(has_pid(child_pid_file))
    child_pid = read_pid(child_pid_file)
    assert pid_alive(child_pid)

    await handle.cancel()
    await handle.cancel()

    assert handle.cancelled
    assert handle.returncode is not None
    assert await wait_until(lambda: not pid_alive(child_pid))
    assert not pid_alive(read_pid(pid_file))


@pytest.mark.asyncio
async def test_cancel_escalates_to_sigkill(tmp_path, monkeypatch):
    monkeypatch.setenv("STUB_SLEEP", "30")
    monkeypatch.setenv("STUB_IGNORE_TERM", "1")
    monkeypatch.setenv("STUB_PID_FILE", str(tmp_path / "pid"))
    runner = ProcessRunner(STUB_COMMAND, timeout=20, info_timeout=10, kill_grace=0.2)

    handle = await runner.run_streaming_to_file(["--", SOURCE_URL], str(tmp_path / "job.%(ext)s"))
    # SIGTERM is only ignored once the stub installed its handler
    assert await wait_until(has_pid(tmp_path / "pid"))
    await handle.cancel()

    assert handle.returncode == -9


@pytest.mark.asyncio
async def test_wall_clock_timeout(tmp_path, monkeypatch):
    monkeypatch.setenv("STUB_SLEEP", "30")
    runner = ProcessRunner(STUB_COMMAND, timeout=0.5, info_timeout=10, kill_grace=0.2)

    handle = await runner.run_streaming_to_file(["--", SOURCE_URL], str(tmp_path / "job.%(ext)s"))
    with pytest.raises(ProcessTimeout):
        await handle.wait()

    assert handle.timed_out
    assert handle.returncode is not None
    assert not os.path.exists(tmp_path / "job.mp4")


@pytest.mark.asyncio
async def test_overlong_stderr_line_keeps_exit_code(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("STUB_EXIT", "1")
    monkeypatch.setenv("STUB_STDERR", "x")
    monkeypatch.setenv("STUB_STDERR_REPEAT", "200000")

    handle = await runner.run_streaming_to_file(["--", SOURCE_URL], str(tmp_path / "job.%(ext)s"))

    assert await handle.wait() == 1
    assert "[stderr line truncated]" in handle.stderr_lines

import asyncio
import json
import logging
import os
import signal
from collections import deque
from contextlib import suppress
from typing import Any, Callable, List, Optional, Sequence, Set

from app.config.settings import config
from app.core.errors import ExecutionFailed, MalformedOutput, ProcessTimeout

logger = logging.getLogger(__name__)

STDERR_MAX_LINES = 50
STDERR_TAIL_LINES = 5
STDERR_TAIL_CHARS = 500


def stderr_tail(lines: Sequence[str]) -> str:
    """Last few non-empty stderr lines, truncated; kept server-side only"""
    tail = [line for line in lines if line][-STDERR_TAIL_LINES:]
    return "\n".join(tail)[-STDERR_TAIL_CHARS:]


def _kill_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the whole process group so extractor children go too"""
    if process.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def _terminate(process: asyncio.subprocess.Process, grace: float) -> None:
    _kill_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        _kill_group(process, signal.SIGKILL)
        await process.wait()
    # Leader may exit first on SIGTERM; make sure nothing in the group survives
    if os.name == "posix":
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)


class ProcessHandle:
    """
    A running fetch-mode extractor.

    ``wait()`` returns the exit code (or raises ProcessTimeout once the
    wall-clock limit is hit), ``cancel()`` terminates the process tree.
    Both are safe to call repeatedly and concurrently.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        destination: str,
        timeout: float,
        grace: float,
        on_stderr: Optional[Callable[[str], None]] = None,
        on_finish: Optional[Callable[[], None]] = None,
    ):
        self.process = process
        self.destination = destination
        self.grace = grace
        self.stderr_lines: deque = deque(maxlen=STDERR_MAX_LINES)
        self._on_stderr = on_stderr
        self._on_finish = on_finish
        self._deadline = asyncio.get_running_loop().time() + timeout
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._cancel_lock = asyncio.Lock()
        self.cancelled = False
        self.timed_out = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stderr_tail(self) -> str:
        return stderr_tail(self.stderr_lines)

    async def _drain_stderr(self) -> None:
        """Drain stderr to prevent buffer deadlock"""
        stream = self.process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except (asyncio.LimitOverrunError, ValueError):
                # Over-long line; the reader already dropped what it buffered
                line = b"[stderr line truncated]\n"
            if not line:
                break
            decoded = line.decode(errors="replace").strip()
            self.stderr_lines.append(decoded)
            if self._on_stderr is not None:
                self._on_stderr(decoded)

    async def _finish(self) -> None:
        try:
            await asyncio.wait_for(self._stderr_task, timeout=max(self.grace, 1.0))
        except asyncio.TimeoutError:
            pass
        except Exception as e:
            logger.warning(f"stderr reader for pid {self.pid} failed: {e!r}")
        finally:
            if not self._stderr_task.done():
                self._stderr_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._stderr_task
        if self._on_finish is not None:
            callback, self._on_finish = self._on_finish, None
            callback()

    async def wait(self) -> int:
        remaining = self._deadline - asyncio.get_running_loop().time()
        try:
            returncode = await asyncio.wait_for(self.process.wait(), timeout=max(remaining, 0))
        except asyncio.TimeoutError:
            self.timed_out = True
            await self.cancel()
            raise ProcessTimeout()
        await self._finish()
        return returncode

    async def cancel(self) -> None:
        async with self._cancel_lock:
            if self.process.returncode is None:
                self.cancelled = True
                await _terminate(self.process, self.grace)
            elif os.name == "posix":
                # Children can outlive the group leader
                with suppress(ProcessLookupError, PermissionError):
                    os.killpg(self.process.pid, signal.SIGKILL)
            await self._finish()


class ProcessRunner:
    """
    Spawn and supervise extractor subprocesses.

    Arguments are always passed as an argument vector, never through a shell.
    Each process runs in its own session so cancellation reaches the whole
    process tree.
    """

    def __init__(
        self,
        command: Sequence[str],
        timeout: float,
        info_timeout: float,
        kill_grace: float = 5.0,
    ):
        self.command = list(command)
        self.timeout = timeout
        self.info_timeout = info_timeout
        self.kill_grace = kill_grace
        self._destinations: Set[str] = set()

    async def _spawn(self, args: Sequence[str], stdout: int) -> asyncio.subprocess.Process:
        cmd = [*self.command, *args]
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to launch extractor {self.command[0]}: {e}")
            raise ExecutionFailed(exit_code=-1, stderr_tail=str(e)) from e

    async def run_capturing_json(self, args: Sequence[str], timeout: Optional[float] = None) -> Any:
        """Run in metadata mode: capture stdout, parse it as one JSON document"""
        process = await self._spawn(args, stdout=asyncio.subprocess.PIPE)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout or self.info_timeout
            )
        except asyncio.TimeoutError:
            await _terminate(process, self.kill_grace)
            raise ProcessTimeout()
        except BaseException:
            await _terminate(process, self.kill_grace)
            raise

        if process.returncode != 0:
            lines = stderr.decode(errors="replace").splitlines()
            raise ExecutionFailed(
                exit_code=process.returncode,
                stderr_tail=stderr_tail([line.strip() for line in lines])
            )

        try:
            return json.loads(stdout.decode(errors="replace"))
        except ValueError as e:
            raise MalformedOutput() from e

    async def run_streaming_to_file(
        self,
        args: Sequence[str],
        destination: str,
        timeout: Optional[float] = None,
        on_stderr: Optional[Callable[[str], None]] = None,
    ) -> ProcessHandle:
        """
        Run in fetch mode, writing the result to ``destination``.
        Returns as soon as the process is started.
        """
        if destination in self._destinations:
            raise RuntimeError(f"Destination already in use: {destination}")
        self._destinations.add(destination)

        try:
            process = await self._spawn(["-o", destination, *args], stdout=asyncio.subprocess.DEVNULL)
        except BaseException:
            self._destinations.discard(destination)
            raise

        return ProcessHandle(
            process,
            destination,
            timeout=timeout or self.timeout,
            grace=self.kill_grace,
            on_stderr=on_stderr,
            on_finish=lambda: self._destinations.discard(destination),
        )


class YTDLPCommandBuilder:
    """Build yt-dlp argument vectors (without the executable itself)"""

    @staticmethod
    def _common_args() -> List[str]:
        args = [
            '--no-playlist',
            '--no-warnings',
            '--socket-timeout', str(config.download.socket_timeout),
            '--retries', str(config.download.retries),
        ]

        if not config.ytdlp.enable_live_streams:
            args.extend(['--match-filter', '!is_live'])

        if config.ytdlp.js_runtime:
            args.extend(['--js-runtimes', config.ytdlp.js_runtime])

        return args

    @staticmethod
    def build_info_command(url: str) -> List[str]:
        """Build args for metadata mode (one JSON document on stdout)"""
        return ['--dump-json', *YTDLPCommandBuilder._common_args(), '--', url]

    @staticmethod
    def build_fetch_command(url: str, format_selector: str) -> List[str]:
        """Build args for fetch mode; the runner supplies the output path"""
        return [
            '-f', format_selector,
            '--merge-output-format', config.ytdlp.merge_output_format,
            '--no-progress',
            '--quiet',
            '--no-part',
            *YTDLPCommandBuilder._common_args(),
            '--',
            url,
        ]

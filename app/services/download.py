import asyncio
import logging
import os
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import aiofiles

from app.core.errors import (
    BackendUnavailable,
    ClientAborted,
    ExecutionFailed,
    OutputMissing,
    StreamError,
    TokenRevoked,
    TooManyConcurrentDownloads,
)
from app.infra.concurrency import ConcurrencyGate, LimitExceeded, Slot
from app.models.internal import StreamToken
from app.services.format import FormatDecision
from app.services.stream_token import StreamTokenService
from app.services.ytdlp import ProcessHandle, ProcessRunner, YTDLPCommandBuilder
from app.utils.filename import build_download_filename, content_disposition
from app.utils.locale import safe_url_for_log

logger = logging.getLogger(__name__)

MEDIA_TYPE = "application/octet-stream"
# yt-dlp leftovers that are never the finished file
PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


class JobStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}


class ClientProbe(Protocol):
    """Anything that can tell whether the HTTP client went away (e.g. a Request)"""

    async def is_disconnected(self) -> bool:
        ...


@dataclass
class DownloadJob:
    """One in-flight download. Lives only as long as the request."""
    token: StreamToken
    slot: Slot
    temp_dir: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.CREATED
    reason: Optional[str] = None
    handle: Optional[ProcessHandle] = None
    output_path: Optional[str] = None
    reader: Any = None
    bytes_sent: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def temp_path(self) -> str:
        # The extractor fills in the container extension
        return os.path.join(self.temp_dir, f"{self.id}.%(ext)s")

    @property
    def file_prefix(self) -> str:
        return f"{self.id}."

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: JobStatus, reason: Optional[str] = None) -> bool:
        """Move to ``status``. Returns False when the job already ended."""
        if self.is_terminal:
            return False
        if status == JobStatus.RUNNING and self.status != JobStatus.CREATED:
            raise RuntimeError(f"Job {self.id} cannot start from {self.status.value}")
        self.status = status
        self.reason = reason
        return True


@dataclass
class PreparedDownload:
    """Response framing plus a lazy, single-pass body"""
    job: DownloadJob
    filename: str
    content_length: int
    headers: Dict[str, str]
    body: AsyncIterator[bytes]
    media_type: str = MEDIA_TYPE
    _closer: Optional[Callable[[], Awaitable[None]]] = None

    async def aclose(self) -> None:
        """Release everything even if the body was never iterated"""
        if self._closer is not None:
            closer, self._closer = self._closer, None
            await closer()


class DownloadOrchestrator:
    """
    Verify a stream token, admit the job through the concurrency gate, run
    the extractor into a job-owned temp file and hand the finished file to
    the caller as a byte stream.

    Every exit path goes through ``_finalize`` exactly once: the process tree
    is stopped, the temp files are removed and the gate slot is released.
    """

    def __init__(
        self,
        tokens: StreamTokenService,
        gate: ConcurrencyGate,
        runner: ProcessRunner,
        temp_dir: str,
        chunk_size: int = 1024 * 1024,
        poll_interval: float = 1.0,
        reverify_after: float = 300.0,
        single_use: bool = False,
    ):
        self.tokens = tokens
        self.gate = gate
        self.runner = runner
        self.temp_dir = temp_dir
        self.chunk_size = chunk_size
        self.poll_interval = poll_interval
        self.reverify_after = reverify_after
        self.single_use = single_use
        self.jobs: Dict[str, DownloadJob] = {}
        self.stats: Dict[str, int] = {
            "started": 0,
            "succeeded": 0,
            "failed": 0,
            "cancelled": 0,
        }

    def prepare_temp_dir(self, max_age: Optional[float] = None) -> int:
        """Create the temp dir and remove files older than ``max_age`` seconds"""
        os.makedirs(self.temp_dir, exist_ok=True)
        if max_age is None:
            return 0

        removed = 0
        cutoff = time.time() - max_age
        for entry in os.scandir(self.temp_dir):
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    os.remove(entry.path)
                    removed += 1
            except OSError as e:
                logger.warning(f"Could not remove stale temp file {entry.name}: {e}")

        if removed:
            logger.info(f"Removed {removed} stale temp files from {self.temp_dir}")
        return removed

    async def start(
        self,
        token_id: str,
        client: Optional[ClientProbe] = None,
        filename_hint: Optional[str] = None,
    ) -> PreparedDownload:
        # Ordered: verify -> acquire -> spawn. Nothing runs for a bad token.
        token = await self.tokens.verify(token_id)

        try:
            slot = await self.gate.acquire(token.owner_id, token.owner_tier)
        except LimitExceeded as e:
            logger.info(f"Download refused for owner {token.owner_id}: {e}")
            raise TooManyConcurrentDownloads(scope=e.scope, limit=e.limit) from e

        if self.single_use:
            try:
                token = await self.tokens.consume(token_id)
            except (asyncio.CancelledError, Exception):
                await asyncio.shield(self.gate.release(slot))
                raise

        job = DownloadJob(token=token, slot=slot, temp_dir=self.temp_dir)
        self.jobs[job.id] = job

        try:
            await self._run(job, client)
            path, size = self._locate_output(job)
            job.reader = await aiofiles.open(path, "rb")
        except (asyncio.CancelledError, ClientAborted):
            await asyncio.shield(self._finalize(job, JobStatus.CANCELLED, "client disconnected"))
            raise
        except TokenRevoked:
            await asyncio.shield(self._finalize(job, JobStatus.CANCELLED, "token revoked"))
            raise
        except StreamError as e:
            await asyncio.shield(self._finalize(job, JobStatus.FAILED, e.kind))
            raise
        except OSError as e:
            await asyncio.shield(self._finalize(job, JobStatus.FAILED, f"io error: {e}"))
            raise OutputMissing() from e
        except BaseException as e:
            await asyncio.shield(self._finalize(job, JobStatus.FAILED, f"unexpected: {e!r}"))
            raise

        extension = os.path.splitext(path)[1].lstrip(".")
        filename = build_download_filename(token.display_title, extension, filename_hint)
        headers = {
            "Content-Disposition": content_disposition(filename),
            "Content-Length": str(size),
            "X-Content-Type-Options": "nosniff",
            "Cache-Control": "no-cache",
            "Accept-Ranges": "none",
        }

        logger.info(f"[job {job.id}] ready: {size} bytes as {filename}")

        async def closer() -> None:
            await body.aclose()
            await asyncio.shield(self._finalize(job, JobStatus.CANCELLED, "response not sent"))

        body = self._stream(job, size)
        return PreparedDownload(
            job=job,
            filename=filename,
            content_length=size,
            headers=headers,
            body=body,
            _closer=closer,
        )

    async def _run(self, job: DownloadJob, client: Optional[ClientProbe]) -> None:
        token = job.token
        args = YTDLPCommandBuilder.build_fetch_command(
            token.source_url,
            FormatDecision.decide(token.format_id)
        )

        def log_stderr(line: str) -> None:
            logger.debug(f"[job {job.id}] {line}")

        job.handle = await self.runner.run_streaming_to_file(args, job.temp_path, on_stderr=log_stderr)
        job.transition(JobStatus.RUNNING)
        self.stats["started"] += 1
        logger.info(
            f"[job {job.id}] extracting format {token.format_id} from {safe_url_for_log(token.source_url)}"
        )

        exit_code = await self._await_exit(job, client)
        if job.is_terminal:
            # Cancelled from outside, e.g. by shutdown
            raise BackendUnavailable(job.reason)
        if exit_code != 0:
            raise ExecutionFailed(exit_code=exit_code, stderr_tail=job.handle.stderr_tail)

    async def _await_exit(self, job: DownloadJob, client: Optional[ClientProbe]) -> int:
        """
        Wait for the extractor while watching the client connection and,
        for long jobs, whether the token was revoked in the meantime.
        """
        loop = asyncio.get_running_loop()
        exit_task = asyncio.create_task(job.handle.wait())
        last_verified = loop.time()

        try:
            while True:
                done, _ = await asyncio.wait({exit_task}, timeout=self.poll_interval)
                if done:
                    return exit_task.result()

                if client is not None and await client.is_disconnected():
                    raise ClientAborted()

                if loop.time() - last_verified >= self.reverify_after:
                    last_verified = loop.time()
                    await self._check_in(job)
        finally:
            if not exit_task.done():
                exit_task.cancel()
                with suppress(asyncio.CancelledError):
                    await exit_task

    async def _check_in(self, job: DownloadJob) -> None:
        """Keep the gate slot alive and stop if the token was revoked meanwhile"""
        await self.gate.refresh(job.slot)
        if await self.tokens.is_revoked(job.token.id):
            logger.info(f"[job {job.id}] token revoked during transfer")
            raise TokenRevoked()

    def _job_files(self, job: DownloadJob) -> List[str]:
        try:
            names = os.listdir(self.temp_dir)
        except FileNotFoundError:
            return []
        return [os.path.join(self.temp_dir, n) for n in names if n.startswith(job.file_prefix)]

    def _locate_output(self, job: DownloadJob) -> Tuple[str, int]:
        finished = []
        for path in self._job_files(job):
            name = os.path.basename(path)
            rest = name[len(job.file_prefix):]
            # "<id>.<ext>" only; "<id>.f137.mp4" and friends are intermediates
            if "." in rest or name.endswith(PARTIAL_SUFFIXES):
                continue
            if os.path.isfile(path):
                finished.append(path)

        if not finished:
            logger.warning(f"[job {job.id}] extractor exited 0 but wrote no file")
            raise OutputMissing()

        path = max(finished, key=os.path.getsize)
        size = os.path.getsize(path)
        if size == 0:
            logger.warning(f"[job {job.id}] extractor produced an empty file")
            raise OutputMissing()

        job.output_path = path
        return path, size

    async def _stream(self, job: DownloadJob, size: int) -> AsyncIterator[bytes]:
        """
        Pull the file one chunk at a time. The consumer drives the pace, so
        nothing beyond one chunk is buffered when the client is slow.
        """
        status, reason = JobStatus.FAILED, None
        loop = asyncio.get_running_loop()
        last_checked = loop.time()
        try:
            while True:
                chunk = await job.reader.read(self.chunk_size)
                if not chunk:
                    break
                if loop.time() - last_checked >= self.reverify_after:
                    last_checked = loop.time()
                    await self._check_in(job)
                job.bytes_sent += len(chunk)
                yield chunk

            if job.bytes_sent != size:
                raise OSError(f"short read: {job.bytes_sent} of {size} bytes")
            status = JobStatus.SUCCEEDED
        except (asyncio.CancelledError, GeneratorExit):
            status, reason = JobStatus.CANCELLED, "client disconnected"
            raise
        except TokenRevoked:
            # Raising aborts the connection instead of a silently short body
            status, reason = JobStatus.CANCELLED, "token revoked"
            raise
        except Exception as e:
            # Headers are out already; raising makes the server abort the connection
            reason = f"read error: {e}"
            logger.error(f"[job {job.id}] {reason}")
            raise
        finally:
            await asyncio.shield(self._finalize(job, status, reason))

    async def _finalize(self, job: DownloadJob, status: JobStatus, reason: Optional[str] = None) -> None:
        if not job.transition(status, reason):
            return

        try:
            if job.reader is not None:
                with suppress(OSError):
                    await job.reader.close()
            if job.handle is not None:
                await job.handle.cancel()
        finally:
            for path in self._job_files(job):
                with suppress(FileNotFoundError):
                    os.remove(path)
            self.jobs.pop(job.id, None)
            try:
                await self.gate.release(job.slot)
            except Exception as e:
                logger.error(f"[job {job.id}] failed to release download slot: {e}")

        self.stats[status.value] += 1
        elapsed = time.monotonic() - job.started_at
        if status == JobStatus.SUCCEEDED:
            logger.info(f"[job {job.id}] sent {job.bytes_sent} bytes in {elapsed:.1f}s")
        elif status == JobStatus.CANCELLED:
            logger.info(f"[job {job.id}] cancelled after {elapsed:.1f}s: {reason}")
        else:
            stderr_tail = job.handle.stderr_tail if job.handle is not None else ""
            logger.warning(f"[job {job.id}] failed after {elapsed:.1f}s: {reason} {stderr_tail}".rstrip())

    async def cancel(self, job_id: str, reason: str = "cancelled") -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        await self._finalize(job, JobStatus.CANCELLED, reason)
        return True

    async def shutdown(self) -> None:
        for job_id in list(self.jobs):
            await self.cancel(job_id, "server shutdown")

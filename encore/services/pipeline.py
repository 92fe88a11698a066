"""
Download-and-transcode pipeline (yt-dlp -> ffmpeg -> cache)
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

from encore.errors import (
    AcquisitionError,
    EncoreError,
    JobCancelledError,
    classify_tool_error,
)
from encore.models import SessionContext
from encore.services import tools
from encore.services.cache import CacheStore

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    key: str
    title: str
    progress_percent: float
    status_text: str
    eta_seconds: int | None = None


class ProgressChannel:
    """Ordered, finite stream of progress events for one job.

    The producer publishes and finally closes the channel; any number of
    consumers can ``async for`` over it, each seeing every event from the start.
    """

    def __init__(self, key: str, title: str):
        self.key = key
        self.title = title
        self.events: list[ProgressEvent] = []
        self.closed = False
        self.error: BaseException | None = None
        self._changed = asyncio.Condition()

    @property
    def percent(self) -> float:
        return self.events[-1].progress_percent if self.events else 0.0

    async def publish(self, percent: float, status_text: str, eta_seconds: int | None = None) -> None:
        if self.closed:
            return
        percent = max(self.percent, min(100.0, percent))
        self.events.append(ProgressEvent(self.key, self.title, round(percent, 1), status_text, eta_seconds))
        async with self._changed:
            self._changed.notify_all()

    async def close(self, error: BaseException | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.error = error
        async with self._changed:
            self._changed.notify_all()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        index = 0
        while True:
            while index < len(self.events):
                yield self.events[index]
                index += 1
            if self.closed:
                return
            async with self._changed:
                await self._changed.wait_for(lambda: self.closed or index < len(self.events))


class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    TRANSCODING = "transcoding"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ProcessingJob:
    key: str
    title: str
    source_url: str
    owner: SessionContext | None
    future: asyncio.Future
    channel: ProgressChannel
    duration_ms: int | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: float = field(default_factory=time.time)
    processes: list[asyncio.subprocess.Process] = field(default_factory=list)
    artifacts: list[Path] = field(default_factory=list)
    task: asyncio.Task | None = None

    @property
    def progress_percent(self) -> float:
        return self.channel.percent


class DownloadPipeline:
    """Runs yt-dlp then ffmpeg for a source URL and stores the result in the cache.

    Concurrent requests for the same cache key share one job.
    """

    def __init__(
        self,
        cache: CacheStore,
        temp_dir: Path,
        ytdlp_path: str = "yt-dlp",
        ffmpeg_path: str = "ffmpeg",
        download_timeout: float = 180.0,
        transcode_timeout: float = 120.0,
        socket_timeout: int = 8,
        retries: int = 1,
        cookies_path: str | None = None,
        po_token: str | None = None,
    ):
        self.cache = cache
        self.temp_dir = Path(temp_dir)
        self.ytdlp_path = ytdlp_path
        self.ffmpeg_path = ffmpeg_path
        self.download_timeout = download_timeout
        self.transcode_timeout = transcode_timeout
        self.socket_timeout = socket_timeout
        self.retries = retries
        self.cookies_path = cookies_path
        self.po_token = po_token
        self.jobs: dict[str, ProcessingJob] = {}
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def active_jobs(self) -> list[ProcessingJob]:
        return list(self.jobs.values())

    def progress(self, source_id: str) -> ProgressChannel | None:
        job = self.jobs.get(self.cache.key_for(source_id))
        return job.channel if job else None

    async def fetch(
        self,
        source_url: str,
        title: str = "",
        owner: SessionContext | None = None,
        duration_ms: int | None = None,
        cache_id: str | None = None,
    ) -> Path:
        """Return the cached file for ``source_url``, producing it if needed.

        ``cache_id`` overrides the identifier used for the cache key (defaults
        to the URL itself).
        """
        source_id = cache_id or source_url
        entry = self.cache.lookup(source_id)
        if entry is not None:
            return entry.path

        key = self.cache.key_for(source_id)
        job = self.jobs.get(key)
        if job is not None:
            logger.info(f"Joining in-flight job {key[:8]} for {title or source_url}")
        else:
            loop = asyncio.get_running_loop()
            job = ProcessingJob(
                key=key,
                title=title or source_url,
                source_url=source_url,
                owner=owner,
                future=loop.create_future(),
                channel=ProgressChannel(key, title or source_url),
                duration_ms=duration_ms,
            )
            self.jobs[key] = job
            job.task = asyncio.create_task(self._run(job, source_id))
        return await asyncio.shield(job.future)

    async def _run(self, job: ProcessingJob, source_id: str) -> None:
        stem = f"{job.key}-{uuid.uuid4().hex[:8]}"
        downloaded = self.temp_dir / f"{stem}.download"
        transcoded = self.temp_dir / f"{stem}.part.mp3"
        job.artifacts = [downloaded, transcoded]
        try:
            await job.channel.publish(5, "Starting download...")
            await self._download(job, downloaded)
            await self._transcode(job, downloaded, transcoded)
            entry = self.cache.store(source_id, transcoded)
            self._unlink(downloaded)
            job.status = JobStatus.COMPLETE
            await job.channel.publish(100, "Ready to play!")
            await job.channel.close()
            if not job.future.done():
                job.future.set_result(entry.path)
            logger.info(f"Pipeline finished for {job.title}")
        except asyncio.CancelledError:
            self._cleanup(job)
            await self._fail(job, JobCancelledError(f"Job for {job.title} was cancelled"), JobStatus.CANCELLED)
            raise
        except EncoreError as e:
            self._cleanup(job)
            logger.warning(f"Pipeline failed for {job.title}: {e}")
            await self._fail(job, e)
        except Exception as e:
            # Waiters are parked on the future; it must always resolve
            self._cleanup(job)
            logger.exception(f"Unexpected pipeline error for {job.title}")
            await self._fail(job, AcquisitionError(f"pipeline error: {e}"))
        finally:
            if self.jobs.get(job.key) is job:
                del self.jobs[job.key]

    async def _download(self, job: ProcessingJob, output: Path) -> None:
        job.status = JobStatus.DOWNLOADING
        args = tools.build_download_args(
            job.source_url, output,
            socket_timeout=self.socket_timeout,
            retries=self.retries,
            cookies_path=self.cookies_path,
            po_token=self.po_token,
        )

        async def on_line(line: str) -> None:
            percent, eta = tools.parse_download_progress(line)
            if percent is not None:
                logger.debug(f"[{job.key[:8]}] download {percent:.1f}%")
                await job.channel.publish(10 + percent * 0.6, f"Downloading... {percent:.0f}%", eta)

        result = await tools.run_tool(
            self.ytdlp_path, args, self.download_timeout,
            on_line=on_line, on_spawn=job.processes.append,
        )
        if result.returncode != 0:
            raise classify_tool_error(result.stderr or result.stdout, "download failed")
        if not output.exists() or output.stat().st_size == 0:
            raise AcquisitionError("download produced no output")
        await job.channel.publish(70, "Converting audio...")

    async def _transcode(self, job: ProcessingJob, source: Path, output: Path) -> None:
        job.status = JobStatus.TRANSCODING
        total = job.duration_ms / 1000 if job.duration_ms else None

        async def on_line(line: str) -> None:
            seconds = tools.parse_transcode_time(line)
            if seconds is None:
                return
            if total:
                percent = 70 + 28 * min(1.0, seconds / total)
            else:
                percent = min(98.0, job.channel.percent + 1)
            await job.channel.publish(percent, "Converting audio...")

        result = await tools.run_tool(
            self.ffmpeg_path, tools.build_transcode_args(source, output), self.transcode_timeout,
            on_line=on_line, on_spawn=job.processes.append,
        )
        if result.returncode != 0:
            raise classify_tool_error(result.stderr, "transcode failed")
        if not output.exists() or output.stat().st_size == 0:
            raise AcquisitionError("transcode produced an empty file")
        await job.channel.publish(98, "Finalizing...")

    async def _fail(self, job: ProcessingJob, error: Exception, status: JobStatus = JobStatus.FAILED) -> None:
        job.status = status
        await job.channel.close(error)
        if not job.future.done():
            job.future.set_exception(error)
            # Mark retrieved so an unawaited failure does not warn at GC
            job.future.exception()

    async def cancel(self, owner: SessionContext) -> int:
        """Kill jobs started on behalf of ``owner``; returns how many were cancelled."""
        # Matched by session key so a voice channel move still reaches earlier jobs
        matching = [job for job in list(self.jobs.values()) if job.owner is not None and job.owner.key == owner.key]
        for job in matching:
            await self._cancel_job(job)
        if matching:
            logger.info(f"Cancelled {len(matching)} job(s) for guild {owner.guild_id}")
        return len(matching)

    async def cancel_all(self) -> int:
        jobs = list(self.jobs.values())
        for job in jobs:
            await self._cancel_job(job)
        return len(jobs)

    async def _cancel_job(self, job: ProcessingJob) -> None:
        if self.jobs.get(job.key) is job:
            del self.jobs[job.key]
        for process in job.processes:
            await tools.kill(process)
        if job.task is not None and not job.task.done():
            job.task.cancel()
        self._cleanup(job)
        await self._fail(job, JobCancelledError(f"Job for {job.title} was cancelled"), JobStatus.CANCELLED)

    def cleanup_temp(self) -> int:
        """Remove leftovers of jobs interrupted by a restart."""
        removed = 0
        for path in self.temp_dir.iterdir():
            if path.is_file() and self._unlink(path):
                removed += 1
        if removed:
            logger.info(f"Removed {removed} stale temp file(s)")
        return removed

    def _cleanup(self, job: ProcessingJob) -> None:
        for path in job.artifacts:
            self._unlink(path)

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
            return False

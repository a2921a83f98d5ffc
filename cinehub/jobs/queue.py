from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from uuid import uuid4

from ..errors import QueueFullError
from .events import EventBus, JobCompleted, JobEnqueued, JobFailed, JobStatusChanged
from .models import CacheJob, CacheKey, CacheRecord, ImageKind, JobStatus, MediaType, QueueStats

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobProcessor(Protocol):
    """Two-phase job body.

    ``run`` does the remote work and is bounded by the job timeout. ``commit``
    persists its result and runs unbounded, so a record is never written for an
    attempt that was already given up on.
    """

    async def run(self, job: CacheJob, reporter: "ProgressReporter") -> CacheRecord: ...

    async def commit(self, job: CacheJob, record: CacheRecord, reporter: "ProgressReporter") -> None: ...


class ProgressReporter:
    def __init__(self, queue: "CacheQueue", job_id: str) -> None:
        self._queue = queue
        self._job_id = job_id

    async def report(self, stage: str) -> None:
        self._queue._set_progress(self._job_id, stage)


class CacheQueue:
    """In-process queue that mirrors remote images into the CDN cache.

    At most one job per ``(media_type, media_id, image_kind)`` is queued or
    active at a time; repeated requests for that key return the existing job.
    A dispatcher task admits queued jobs in FIFO order while fewer than
    ``max_concurrency`` are active, so bursts wait in ``queued`` instead of
    piling onto the origin and the CDN.

    Failed attempts are retried with exponential backoff until ``retry_limit``
    attempts have been made; after that the job stays ``failed``. Every
    transition is published on ``events``.
    """

    def __init__(
        self,
        *,
        processor: JobProcessor,
        events: Optional[EventBus] = None,
        max_concurrency: int = 3,
        retry_limit: int = 3,
        retry_base_delay: float = 1.0,
        job_timeout: float = 60.0,
        max_queued: int = 10_000,
        retention_seconds: float = 3600.0,
        max_retained: int = 1000,
        idle_interval: float = 30.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if retry_limit < 1:
            raise ValueError("retry_limit must be at least 1")
        self.processor = processor
        self.events = events or EventBus()
        self.max_concurrency = max_concurrency
        self.retry_limit = retry_limit
        self.retry_base_delay = retry_base_delay
        self.job_timeout = job_timeout
        self.max_queued = max_queued
        self.retention_seconds = retention_seconds
        self.max_retained = max_retained
        self.idle_interval = idle_interval

        self._jobs: dict[str, CacheJob] = {}
        self._in_flight: dict[CacheKey, str] = {}
        self._latest: dict[CacheKey, str] = {}
        self._pending: deque[str] = deque()
        self._ready_at: dict[str, float] = {}
        self._active: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._finished: dict[str, asyncio.Event] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._wakeup = asyncio.Event()
        self._stopped = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None

    # Public API

    def enqueue(
        self,
        media_type: MediaType | str,
        media_id: int,
        image_kind: ImageKind | str,
        source_url: str,
    ) -> str:
        key = CacheKey(MediaType(media_type), int(media_id), ImageKind(image_kind))
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("Cache job already in flight for %s: %s", key.as_string(), existing)
            return existing
        if len(self._pending) >= self.max_queued:
            raise QueueFullError(self.max_queued)

        job = CacheJob(
            id=uuid4().hex,
            media_type=key.media_type,
            media_id=key.media_id,
            image_kind=key.image_kind,
            source_url=source_url,
            status=JobStatus.QUEUED,
            enqueued_at=_utcnow(),
        )
        self._jobs[job.id] = job
        self._in_flight[key] = job.id
        self._latest[key] = job.id
        self._pending.append(job.id)
        self._idle.clear()

        logger.info("Enqueued cache job %s for %s", job.id, key.as_string())
        self.events.publish(JobEnqueued(job=self._snapshot(job), stats=self.get_queue_stats()))
        self._wakeup.set()
        return job.id

    def get_status(self, job_id: str) -> Optional[CacheJob]:
        job = self._jobs.get(job_id)
        return self._snapshot(job) if job is not None else None

    def get_status_by_media(
        self,
        media_type: MediaType | str,
        media_id: int,
        image_kind: ImageKind | str = ImageKind.POSTER,
    ) -> Optional[CacheJob]:
        key = CacheKey(MediaType(media_type), int(media_id), ImageKind(image_kind))
        job_id = self._latest.get(key)
        return self.get_status(job_id) if job_id is not None else None

    def get_queue_stats(self) -> QueueStats:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return QueueStats(
            queued=counts[JobStatus.QUEUED],
            active=counts[JobStatus.ACTIVE],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
        )

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def started(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[CacheJob]:
        """Wait until the job reaches a terminal state and return its snapshot."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.status.is_terminal:
            finished = self._finished.setdefault(job_id, asyncio.Event())
            await asyncio.wait_for(finished.wait(), timeout)
        return self._snapshot(job)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until no job is queued or active."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    # Lifecycle

    def start(self) -> None:
        if self.started:
            return
        self._stopped.clear()
        self._dispatcher = asyncio.create_task(self.run_forever(), name="cache-queue-dispatcher")

    def stop(self) -> None:
        self._stopped.set()
        self._wakeup.set()

    async def shutdown(self, timeout: float = 5.0) -> None:
        self.stop()
        if self._dispatcher is not None:
            await self._dispatcher
            self._dispatcher = None
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %s in-flight cache job(s) during shutdown", len(pending))

    async def run_forever(self) -> None:
        logger.info(
            "Cache queue dispatcher started (max_concurrency=%s, retry_limit=%s)",
            self.max_concurrency,
            self.retry_limit,
        )
        while not self._stopped.is_set():
            self._wakeup.clear()
            self._admit_ready_jobs()
            self.prune_terminal_jobs()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_wakeup_delay())
            except asyncio.TimeoutError:
                pass
        logger.info("Cache queue dispatcher stopped")

    def prune_terminal_jobs(self, *, now: Optional[datetime] = None) -> int:
        """Forget terminal jobs past the retention window or beyond ``max_retained``."""
        cutoff = (now or _utcnow()) - timedelta(seconds=self.retention_seconds)
        terminal = sorted(
            (job for job in self._jobs.values() if job.status.is_terminal),
            key=lambda job: job.completed_at or job.enqueued_at,
        )
        excess = len(terminal) - self.max_retained
        evicted = 0
        for index, job in enumerate(terminal):
            expired = job.completed_at is not None and job.completed_at < cutoff
            if index < excess or expired:
                self._forget(job)
                evicted += 1
        if evicted:
            logger.debug("Evicted %s terminal cache job(s)", evicted)
        return evicted

    # Scheduling

    def _admit_ready_jobs(self) -> int:
        admitted = 0
        now = time.monotonic()
        deferred: deque[str] = deque()
        while self._pending and len(self._active) < self.max_concurrency:
            job_id = self._pending.popleft()
            if self._ready_at.get(job_id, 0.0) > now:
                deferred.append(job_id)
                continue
            self._ready_at.pop(job_id, None)
            self._start_job(self._jobs[job_id])
            admitted += 1
        deferred.extend(self._pending)
        self._pending = deferred
        return admitted

    def _next_wakeup_delay(self) -> float:
        if not self._pending or len(self._active) >= self.max_concurrency:
            return self.idle_interval
        now = time.monotonic()
        earliest = min(self._ready_at.get(job_id, now) for job_id in self._pending)
        return min(max(earliest - now, 0.0), self.idle_interval)

    def _start_job(self, job: CacheJob) -> None:
        job.status = JobStatus.ACTIVE
        job.attempts += 1
        job.started_at = _utcnow()
        job.error = None
        job.progress = f"Starting attempt {job.attempts}/{self.retry_limit}"
        self._active.add(job.id)
        self._emit_status(job)

        task = asyncio.create_task(self._execute(job.id), name=f"cache-job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job_id: str) -> None:
        job = self._jobs[job_id]
        reporter = ProgressReporter(self, job_id)
        try:
            record = await asyncio.wait_for(
                self.processor.run(self._snapshot(job), reporter),
                timeout=self.job_timeout,
            )
            await self._commit(job, record, reporter)
        except asyncio.TimeoutError:
            logger.warning("Cache job %s timed out after %ss", job_id, self.job_timeout)
            self._record_failure(job, f"Timed out after {self.job_timeout:g}s")
        except asyncio.CancelledError:
            if not job.status.is_terminal:
                self._record_failure(job, "Interrupted by shutdown", retry=False)
            raise
        except Exception as exc:
            logger.exception("Cache job %s failed on attempt %s: %s", job_id, job.attempts, exc)
            self._record_failure(job, str(exc) or exc.__class__.__name__)
        else:
            self._record_success(job, record)
        finally:
            self._active.discard(job_id)
            self._wakeup.set()

    async def _commit(self, job: CacheJob, record: CacheRecord, reporter: ProgressReporter) -> None:
        commit = asyncio.ensure_future(self.processor.commit(self._snapshot(job), record, reporter))
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            # A write already in progress must land before the job is torn down.
            await asyncio.wait({commit})
            if not commit.cancelled() and commit.exception() is None:
                self._record_success(job, record)
            raise

    def _record_success(self, job: CacheJob, record: CacheRecord) -> None:
        job.status = JobStatus.COMPLETED
        job.progress = "Caching completed"
        job.error = None
        job.completed_at = _utcnow()
        self._release(job)

        logger.info("Cache job %s completed: %s", job.id, record.delivery_url)
        self._emit_status(job)
        self.events.publish(
            JobCompleted(
                job=self._snapshot(job),
                delivery_url=record.delivery_url,
                public_id=record.public_id,
            )
        )
        self._notify_finished(job)

    def _record_failure(self, job: CacheJob, message: str, *, retry: bool = True) -> None:
        job.status = JobStatus.FAILED
        job.error = message

        if retry and job.attempts < self.retry_limit:
            self._emit_status(job)
            delay = self.retry_base_delay * 2 ** (job.attempts - 1)
            job.status = JobStatus.QUEUED
            job.error = None
            job.progress = f"Retrying in {delay:g}s (attempt {job.attempts + 1}/{self.retry_limit})"
            self._ready_at[job.id] = time.monotonic() + delay
            self._pending.appendleft(job.id)
            logger.info("Retrying cache job %s in %ss: %s", job.id, delay, message)
            self._emit_status(job)
            return

        job.progress = f"Failed after {job.attempts} attempt(s)"
        job.completed_at = _utcnow()
        self._release(job)

        logger.error("Cache job %s failed permanently: %s", job.id, message)
        self._emit_status(job)
        self.events.publish(JobFailed(job=self._snapshot(job), error=message))
        self._notify_finished(job)

    def _set_progress(self, job_id: str, stage: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.ACTIVE:
            return
        job.progress = stage
        self._emit_status(job)

    # Bookkeeping

    def _emit_status(self, job: CacheJob) -> None:
        self.events.publish(JobStatusChanged(job=self._snapshot(job)))

    def _release(self, job: CacheJob) -> None:
        if self._in_flight.get(job.key) == job.id:
            del self._in_flight[job.key]
        if not self._in_flight:
            self._idle.set()

    def _notify_finished(self, job: CacheJob) -> None:
        finished = self._finished.pop(job.id, None)
        if finished is not None:
            finished.set()
        self.prune_terminal_jobs()

    def _forget(self, job: CacheJob) -> None:
        self._jobs.pop(job.id, None)
        self._finished.pop(job.id, None)
        if self._latest.get(job.key) == job.id:
            del self._latest[job.key]

    @staticmethod
    def _snapshot(job: CacheJob) -> CacheJob:
        return replace(job)

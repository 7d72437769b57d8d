"""Durable single-flight job queue, one instance (and one worker) per kind.

Architecture
~~~~~~~~~~~~
Every enrichment workflow (window analysis, chat, comparison, period
summary, food tags) runs through the same queue, parameterised by the
coroutine that processes one job:

1. ``enqueue`` persists a ``pending`` row, appends the job to an in-memory
   ready list and releases a wake signal.  A subject already waiting in
   the ready list is not queued twice.
2. The worker wakes on the signal, drains every signal that piled up
   meanwhile, then works through the ready list in FIFO order.
3. ``start`` first re-queues ``pending`` / ``processing`` rows of its kind
   left behind by a previous process (at-least-once delivery).
4. A job ends ``completed`` or ``failed`` (error truncated); there is no
   automatic retry.  Observers hear about both outcomes.

Cancelling the worker leaves an interrupted job ``processing``; it is
picked up again by the next ``start``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable

import structlog

from cgm_agent.clock import Clock, SystemClock
from cgm_agent.models import Job, JobKind
from cgm_agent.notifications.handlers import NotificationSink
from cgm_agent.storage.repository import JobRepository

logger = structlog.get_logger(__name__)

JobProcessor = Callable[[Job], Awaitable[None]]
FailureHook = Callable[[Job, str], Awaitable[None]]

DEFAULT_ERROR_MAX_LENGTH = 2000


def truncate_error(message: str, limit: int) -> str:
    return message if len(message) <= limit else message[:limit]


def describe_error(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__


class JobQueue:
    """Generic durable queue with a single active worker.

    Parameters
    ----------
    kind:
        The job kind this queue owns; recovery only touches rows of it.
    processor:
        ``async (job) -> None``.  Returning means success; raising means
        failure.
    jobs:
        Persistence for job rows.
    notifier:
        Receives ``"<kind>.completed"`` / ``"<kind>.failed"``.
    on_failure:
        Optional ``async (job, error)`` hook, e.g. to mark a comparison
        failed.  Its own errors are logged, never raised.
    error_max_length:
        Stored error messages are cut to this many characters.
    """

    def __init__(
        self,
        kind: JobKind,
        processor: JobProcessor,
        jobs: JobRepository,
        *,
        notifier: NotificationSink | None = None,
        clock: Clock | None = None,
        on_failure: FailureHook | None = None,
        error_max_length: int = DEFAULT_ERROR_MAX_LENGTH,
    ) -> None:
        self.kind = kind
        self._processor = processor
        self._jobs = jobs
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._on_failure = on_failure
        self._error_max_length = error_max_length

        self._ready: deque[Job] = deque()
        self._waiting: dict[str, Job] = {}
        self._active: Job | None = None
        self._signal = asyncio.Semaphore(0)
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task[None] | None = None
        self._log = logger.bind(kind=kind.value)

    # ── Introspection ─────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_count(self) -> int:
        return len(self._ready)

    def is_active(self, subject_id: str) -> bool:
        """``True`` while *subject_id* is waiting or being processed."""
        if subject_id in self._waiting:
            return True
        return self._active is not None and self._active.subject_id == subject_id

    # ── Producer side ─────────────────────────────────────────

    async def enqueue(
        self,
        subject_id: str,
        *,
        model_override: str | None = None,
        reason: str | None = None,
        replace_reason: bool = False,
    ) -> Job:
        """Persist and queue a job for *subject_id*.

        When the subject is already waiting the existing job is returned
        and nothing new is persisted.  With *replace_reason* the waiting
        job takes over *reason*, so a forced trigger is never recorded
        under a weaker one.  A subject that is only being processed gets
        a fresh job that runs after the current one.
        """
        waiting = self._waiting.get(subject_id)
        if waiting is not None:
            if replace_reason and reason is not None and waiting.reason != reason:
                waiting.reason = reason
                await self._jobs.set_reason(waiting.id, reason)
                self._log.info("queue.reason_replaced", subject_id=subject_id, job_id=waiting.id, reason=reason)
            else:
                self._log.debug("queue.coalesced", subject_id=subject_id, job_id=waiting.id)
            return waiting

        job = Job(
            kind=self.kind,
            subject_id=subject_id,
            model_override=model_override,
            reason=reason,
            created_at=self._clock.now(),
        )
        await self._jobs.create(job)
        self._push(job)
        self._log.info("queue.enqueued", subject_id=subject_id, job_id=job.id, reason=reason)
        return job

    def _push(self, job: Job) -> None:
        self._ready.append(job)
        self._waiting[job.subject_id] = job
        self._idle.clear()
        self._signal.release()

    # ── Lifecycle ─────────────────────────────────────────────

    async def recover(self) -> int:
        """Re-queue unfinished rows of this kind.  Returns how many were queued."""
        recovered = 0
        for job in await self._jobs.list_unfinished(self.kind):
            waiting = self._waiting.get(job.subject_id)
            if waiting is not None:
                if waiting.id == job.id:
                    continue
                # Another unfinished row already covers this subject.
                await self._jobs.mark_completed(job.id, self._clock.now())
                self._log.info("queue.recovery_coalesced", job_id=job.id, subject_id=job.subject_id)
                continue
            self._push(job)
            recovered += 1
        if recovered:
            self._log.info("queue.recovered", jobs=recovered)
        return recovered

    async def start(self) -> None:
        """Recover unfinished jobs, then start the worker."""
        if self.is_running:
            return
        await self.recover()
        self._task = asyncio.create_task(self._run(), name=f"job-queue-{self.kind.value}")
        self._log.info("queue.started")

    async def stop(self) -> None:
        """Cancel the worker.  An interrupted job stays ``processing``."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._active = None
        self._log.info("queue.stopped")

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Block until the ready list is empty and no job is running."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    # ── Worker ────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            await self._signal.acquire()
            # Drain: many enqueues while busy wake the worker once.
            while not self._signal.locked():
                await self._signal.acquire()

            while self._ready:
                job = self._ready.popleft()
                self._waiting.pop(job.subject_id, None)
                self._active = job
                try:
                    await self._process(job)
                except Exception:
                    self._log.exception("queue.worker_error", job_id=job.id)
                finally:
                    self._active = None

            if not self._ready:
                self._idle.set()

    async def _process(self, job: Job) -> None:
        log = self._log.bind(job_id=job.id, subject_id=job.subject_id)
        await self._jobs.mark_processing(job.id, self._clock.now())
        log.info("queue.job_started", reason=job.reason)

        try:
            await self._processor(job)
        except Exception as exc:
            error = truncate_error(describe_error(exc), self._error_max_length)
            log.warning("queue.job_failed", error=error, exc_info=True)
            await self._jobs.mark_failed(job.id, error, self._clock.now())
            if self._on_failure is not None:
                try:
                    await self._on_failure(job, error)
                except Exception:
                    log.exception("queue.failure_hook_error")
            await self._notify("failed", job)
            return

        await self._jobs.mark_completed(job.id, self._clock.now())
        log.info("queue.job_completed")
        await self._notify("completed", job)

    async def _notify(self, outcome: str, job: Job) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(f"{self.kind.value}.{outcome}", 1, job.subject_id)
        except Exception:
            self._log.exception("queue.notify_error", job_id=job.id)

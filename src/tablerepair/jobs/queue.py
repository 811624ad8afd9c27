"""In-process job queue with keyed jobs, priorities, delays and a global start-rate limit.

Semantics mirror a durable work queue:

- Jobs are keyed (the task id).  Enqueueing a key that is still waiting,
  delayed or active is a no-op; a completed or failed key can be enqueued
  again.
- Ready jobs are delivered lowest ``priority`` first, then in enqueue order.
- A handler that *raises* gets its job redelivered, with exponential backoff,
  until ``max_deliveries`` is reached.  This counter belongs to the queue and
  is independent of a task's own ``attempts``.
- Every job start, across all workers, passes through one
  ``SlidingWindowLimiter``.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tablerepair.jobs.models import JobPayload

logger = logging.getLogger(__name__)

RATE_WINDOW_S = 60.0


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.WAITING, JobState.DELAYED)
LIVE_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


@dataclass
class Job:
    key: str
    payload: JobPayload
    priority: int = 0
    state: JobState = JobState.WAITING
    ready_at: float = 0.0
    deliveries: int = 0
    seq: int = 0
    error: str | None = None
    result: Any = None


@dataclass
class Requeue:
    """Follow-up job enqueued in the same step that completes the current one."""

    payload: JobPayload
    delay_s: float = 0.0
    priority: int = 0


# ─── Rate Limiting ───────────────────────────────────────────────────────────


class SlidingWindowLimiter:
    """Allow at most ``max_starts`` acquisitions in any ``window_s``-second window."""

    def __init__(self, max_starts: int, window_s: float = RATE_WINDOW_S, clock: Callable[[], float] = time.monotonic):
        if max_starts < 1:
            raise ValueError("max_starts must be >= 1")
        self.max_starts = max_starts
        self.window_s = window_s
        self._clock = clock
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_s:
            self._starts.popleft()

    async def acquire(self) -> float:
        """Wait for a free start slot and take it.  Returns the slot token for ``release``."""
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._starts) < self.max_starts:
                    self._starts.append(now)
                    return now
                wait = self._starts[0] + self.window_s - now
                logger.debug("Rate limit reached, waiting %.2fs", wait)
                await asyncio.sleep(wait)

    def release(self, token: float) -> None:
        """Give back a slot taken by ``acquire`` that was not used to start anything."""
        try:
            self._starts.remove(token)
        except ValueError:
            logger.debug("Start slot %.3f already left the window", token)

    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._starts)


# ─── Queue ───────────────────────────────────────────────────────────────────


class JobQueue:
    def __init__(
        self,
        limiter: SlidingWindowLimiter | None = None,
        max_deliveries: int = 3,
        redelivery_base_delay_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limiter = limiter
        self.max_deliveries = max_deliveries
        self.redelivery_base_delay_s = redelivery_base_delay_s
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._paused = False

    # ─── Producers ───────────────────────────────────────────────────────

    def _insert(self, key: str, payload: JobPayload, priority: int, delay_s: float) -> None:
        self._jobs[key] = Job(
            key=key,
            payload=payload,
            priority=priority,
            state=JobState.DELAYED if delay_s > 0 else JobState.WAITING,
            ready_at=self._clock() + delay_s,
            seq=next(self._seq),
        )

    async def enqueue(self, key: str, payload: JobPayload, priority: int = 0, delay_s: float = 0.0) -> bool:
        """Add a job; returns False when a live job with the same key already exists."""
        async with self._cond:
            existing = self._jobs.get(key)
            if existing is not None and existing.state in LIVE_STATES:
                logger.debug("Job %s already %s, not re-enqueued", key, existing.state.value)
                return False
            self._insert(key, payload, priority, delay_s)
            self._cond.notify_all()
            return True

    async def enqueue_many(self, payloads: Iterable[JobPayload]) -> int:
        """Enqueue in order, using each payload's position as its priority."""
        added = 0
        for index, payload in enumerate(payloads):
            if await self.enqueue(payload.task_id, payload, priority=index):
                added += 1
        logger.info("%d jobs added to the queue", added)
        return added

    async def remove(self, key: str) -> bool:
        """Remove a waiting or delayed job.  Active jobs cannot be removed."""
        async with self._cond:
            job = self._jobs.get(key)
            if job is None or job.state not in PENDING_STATES:
                return False
            del self._jobs[key]
            self._cond.notify_all()
            return True

    async def remove_where(self, predicate: Callable[[Job], bool]) -> int:
        """Remove every waiting or delayed job matching *predicate*."""
        async with self._cond:
            doomed = [k for k, j in self._jobs.items() if j.state in PENDING_STATES and predicate(j)]
            for key in doomed:
                del self._jobs[key]
            self._cond.notify_all()
            return len(doomed)

    async def pause(self) -> None:
        async with self._cond:
            self._paused = True
        logger.info("Queue paused")

    async def resume(self) -> None:
        async with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("Queue resumed")

    # ─── Inspection ──────────────────────────────────────────────────────

    def _promote_due(self, now: float) -> None:
        for job in self._jobs.values():
            if job.state == JobState.DELAYED and job.ready_at <= now:
                job.state = JobState.WAITING

    async def get_job(self, key: str) -> Job | None:
        return self._jobs.get(key)

    async def list_jobs(self, states: Iterable[JobState] | None = None) -> list[Job]:
        self._promote_due(self._clock())
        wanted = set(states) if states is not None else set(JobState)
        jobs = [j for j in self._jobs.values() if j.state in wanted]
        return sorted(jobs, key=lambda j: (j.priority, j.seq))

    async def counts(self) -> dict[str, int]:
        self._promote_due(self._clock())
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return counts

    def is_idle(self) -> bool:
        return not any(j.state in LIVE_STATES for j in self._jobs.values())

    # ─── Consumers ───────────────────────────────────────────────────────

    def _next_ready(self) -> Job | None:
        now = self._clock()
        self._promote_due(now)
        ready = [j for j in self._jobs.values() if j.state == JobState.WAITING]
        return min(ready, key=lambda j: (j.priority, j.seq)) if ready else None

    def _next_wakeup(self) -> float | None:
        delayed = [j.ready_at for j in self._jobs.values() if j.state == JobState.DELAYED]
        return max(0.0, min(delayed) - self._clock()) if delayed else None

    async def _wait_for_ready(self, stop_when_idle: bool) -> bool:
        """Block until a job is ready.  Returns False if the queue drained and *stop_when_idle*."""
        async with self._cond:
            while True:
                if not self._paused and self._next_ready() is not None:
                    return True
                if stop_when_idle and self.is_idle():
                    return False
                timeout = self._next_wakeup()
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    async def take(self, stop_when_idle: bool = False) -> Job | None:
        """Return the next job, now ACTIVE, after the rate limiter admits its start."""
        while True:
            if not await self._wait_for_ready(stop_when_idle):
                return None
            slot = await self.limiter.acquire() if self.limiter is not None else None
            async with self._cond:
                job = None if self._paused else self._next_ready()
                if job is None:
                    # Paused, or another consumer claimed the job first
                    if slot is not None:
                        self.limiter.release(slot)
                    continue
                job.state = JobState.ACTIVE
                job.deliveries += 1
                return job

    async def complete(self, job: Job, result: Any = None, requeue: Requeue | None = None) -> None:
        """Mark *job* completed and, in the same step, enqueue its follow-up if one is given."""
        async with self._cond:
            job.state = JobState.COMPLETED
            job.result = result
            if requeue is not None:
                self._insert(requeue.payload.task_id, requeue.payload, requeue.priority, requeue.delay_s)
            self._cond.notify_all()

    async def fail(self, job: Job, error: BaseException) -> None:
        """Record a thrown handler error: redeliver with backoff or mark the job FAILED."""
        async with self._cond:
            job.error = str(error)
            if job.deliveries < self.max_deliveries:
                delay = self.redelivery_base_delay_s * 2 ** (job.deliveries - 1)
                job.state = JobState.DELAYED if delay > 0 else JobState.WAITING
                job.ready_at = self._clock() + delay
                logger.warning("Job %s failed (delivery %d), redelivering in %.1fs: %s", job.key, job.deliveries, delay, error)
            else:
                job.state = JobState.FAILED
                logger.error("Job %s failed permanently after %d deliveries: %s", job.key, job.deliveries, error)
            self._cond.notify_all()


# ─── Worker Pool ─────────────────────────────────────────────────────────────


Handler = Callable[[Job], Awaitable[Any]]


class WorkerPool:
    """Run ``concurrency`` workers that pull jobs and pass them to *handler*.

    A handler result with a non-None ``requeue`` attribute (a ``Requeue``) is
    enqueued in the same step that marks the job completed, so the task id can
    be reused as the key.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Handler,
        concurrency: int = 1,
        on_result: Callable[[Job, Any], None] | None = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.on_result = on_result
        self._tasks: list[asyncio.Task] = []

    async def _run_job(self, job: Job) -> None:
        try:
            result = await self.handler(job)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Job %s error: %s", job.key, exc)
            await self.queue.fail(job, exc)
            return

        await self.queue.complete(job, result, requeue=getattr(result, "requeue", None))
        if self.on_result is not None:
            self.on_result(job, result)

    async def _worker(self, worker_id: int, stop_when_idle: bool) -> None:
        logger.debug("Worker %d started", worker_id)
        while True:
            job = await self.queue.take(stop_when_idle=stop_when_idle)
            if job is None:
                break
            await self._run_job(job)
        logger.debug("Worker %d stopped", worker_id)

    async def run_until_idle(self) -> None:
        """Process jobs until nothing is waiting, delayed or active."""
        await asyncio.gather(*(self._worker(i, stop_when_idle=True) for i in range(self.concurrency)))

    def start(self) -> None:
        """Start long-running workers in the background (stop them with ``stop``)."""
        self._tasks = [asyncio.create_task(self._worker(i, stop_when_idle=False)) for i in range(self.concurrency)]
        logger.info("Worker pool started (concurrency=%d)", self.concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

"""Persistence contract for batches, tasks and logs, plus an in-memory implementation.

The store is a constructed service with an explicit ``open``/``close``
lifecycle, handed to whatever needs it.  Every method returns copies, so
callers never mutate stored records behind the store's back.  Counter
increments and the completion claim happen under the store lock, which makes
them atomic with respect to concurrent workers.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Protocol

from tablerepair.errors import BatchNotFoundError, TaskNotFoundError
from tablerepair.jobs.models import (
    NOT_STARTED_TASK_STATUSES,
    Batch,
    BatchCounters,
    BatchPhase,
    BatchProgress,
    BatchStatus,
    LogLevel,
    ProcessLog,
    Task,
    TaskStatus,
    TaskUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)


class Store(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    # Batches
    async def create_batch(self, batch: Batch) -> Batch: ...

    async def get_batch(self, batch_id: str) -> Batch: ...

    async def list_batches(self) -> list[Batch]: ...

    async def update_batch_status(self, batch_id: str, status: BatchStatus, phase: BatchPhase | None = None) -> Batch: ...

    async def set_batch_totals(self, batch_id: str, **totals: int) -> Batch: ...

    async def increment_batch_counters(self, batch_id: str, counters: BatchCounters) -> Batch: ...

    async def set_batch_output_file(self, batch_id: str, path: str) -> Batch: ...

    async def claim_batch_completion(self, batch_id: str) -> bool: ...

    async def get_batch_progress(self, batch_id: str) -> BatchProgress: ...

    async def delete_old_batches(self, days_old: int = 30) -> int: ...

    # Tasks
    async def create_tasks(self, tasks: list[Task]) -> int: ...

    async def get_task(self, task_id: str) -> Task: ...

    async def update_task_status(self, task_id: str, status: TaskStatus, extras: TaskUpdate | None = None) -> Task: ...

    async def cancel_pending_tasks(self, batch_id: str) -> int: ...

    async def list_tasks(self, batch_id: str, status: TaskStatus | None = None) -> list[Task]: ...

    async def completed_tasks_by_question(self, batch_id: str) -> dict[int, list[Task]]: ...

    # Logs
    async def create_log(self, batch_id: str, level: LogLevel, message: str, **extras) -> ProcessLog: ...

    async def get_logs(
        self, batch_id: str, level: LogLevel | None = None, limit: int = 100, offset: int = 0
    ) -> list[ProcessLog]: ...


class MemoryStore:
    """Process-local store.  Records live in dicts guarded by one ``asyncio.Lock``."""

    def __init__(self):
        self._batches: dict[str, Batch] = {}
        self._tasks: dict[str, Task] = {}
        self._logs: list[ProcessLog] = []
        self._lock = asyncio.Lock()
        self._open = False

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def open(self) -> None:
        self._open = True
        logger.info("Store opened")

    async def close(self) -> None:
        self._open = False
        logger.info("Store closed")

    async def __aenter__(self) -> "MemoryStore":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _check_open(self) -> None:
        if not self._open:
            raise RuntimeError("Store is not open")

    def _batch(self, batch_id: str) -> Batch:
        self._check_open()
        try:
            return self._batches[batch_id]
        except KeyError:
            raise BatchNotFoundError(f"Batch not found: {batch_id}") from None

    def _task(self, task_id: str) -> Task:
        self._check_open()
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(f"Task not found: {task_id}") from None

    # ─── Batches ─────────────────────────────────────────────────────────

    async def create_batch(self, batch: Batch) -> Batch:
        self._check_open()
        async with self._lock:
            self._batches[batch.id] = batch.model_copy(deep=True)
        logger.info("Batch created: %s (%s)", batch.id, batch.file_name)
        return batch.model_copy(deep=True)

    async def get_batch(self, batch_id: str) -> Batch:
        return self._batch(batch_id).model_copy(deep=True)

    async def list_batches(self) -> list[Batch]:
        self._check_open()
        batches = sorted(self._batches.values(), key=lambda b: b.created_at, reverse=True)
        return [b.model_copy(deep=True) for b in batches]

    async def update_batch_status(self, batch_id: str, status: BatchStatus, phase: BatchPhase | None = None) -> Batch:
        async with self._lock:
            batch = self._batch(batch_id)
            batch.status = status
            if phase is not None:
                batch.phase = phase
            now = utcnow()
            if status == BatchStatus.PROCESSING and batch.started_at is None:
                batch.started_at = now
            if status == BatchStatus.COMPLETED:
                batch.completed_at = now
            if status == BatchStatus.CANCELLED:
                batch.cancelled_at = now
            return batch.model_copy(deep=True)

    async def set_batch_totals(self, batch_id: str, **totals: int) -> Batch:
        """Overwrite absolute totals (``total_questions``, ``total_tables``, ``total_issues``)."""
        allowed = {"total_questions", "total_tables", "total_issues"}
        unknown = set(totals) - allowed
        if unknown:
            raise ValueError(f"Unknown batch totals: {sorted(unknown)}")
        async with self._lock:
            batch = self._batch(batch_id)
            for name, value in totals.items():
                setattr(batch, name, value)
            return batch.model_copy(deep=True)

    async def increment_batch_counters(self, batch_id: str, counters: BatchCounters) -> Batch:
        async with self._lock:
            batch = self._batch(batch_id)
            batch.success_count += counters.success_count
            batch.failed_count += counters.failed_count
            batch.tokens_used += counters.tokens_used
            batch.cost_brl += counters.cost_brl
            return batch.model_copy(deep=True)

    async def set_batch_output_file(self, batch_id: str, path: str) -> Batch:
        async with self._lock:
            batch = self._batch(batch_id)
            batch.output_file_path = path
            return batch.model_copy(deep=True)

    async def claim_batch_completion(self, batch_id: str) -> bool:
        """Move a PROCESSING batch into the EXPORT phase; True for exactly one caller."""
        async with self._lock:
            batch = self._batch(batch_id)
            if batch.status != BatchStatus.PROCESSING or batch.phase in (BatchPhase.EXPORT, BatchPhase.DONE):
                return False
            batch.phase = BatchPhase.EXPORT
            return True

    async def get_batch_progress(self, batch_id: str) -> BatchProgress:
        batch = self._batch(batch_id)
        tasks = [t for t in self._tasks.values() if t.batch_id == batch_id]
        total = len(tasks)
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        failed = sum(1 for t in tasks if t.status == TaskStatus.FAILED)
        cancelled = sum(1 for t in tasks if t.status == TaskStatus.CANCELLED)
        return BatchProgress(
            batch_id=batch.id,
            status=batch.status,
            phase=batch.phase,
            total_tasks=total,
            completed_tasks=completed,
            failed_tasks=failed,
            cancelled_tasks=cancelled,
            percentage=round(completed / total * 100) if total else 0,
            tokens_used=batch.tokens_used,
            cost_brl=batch.cost_brl,
            output_file_ready=batch.output_file_path is not None,
        )

    async def delete_old_batches(self, days_old: int = 30) -> int:
        """Delete terminal batches created before the retention window, with their tasks and logs."""
        self._check_open()
        cutoff = utcnow() - timedelta(days=days_old)
        async with self._lock:
            doomed = {b.id for b in self._batches.values() if b.is_terminal and b.created_at < cutoff}
            for batch_id in doomed:
                del self._batches[batch_id]
            self._tasks = {k: t for k, t in self._tasks.items() if t.batch_id not in doomed}
            self._logs = [entry for entry in self._logs if entry.batch_id not in doomed]
        if doomed:
            logger.info("Deleted %d batches older than %d days", len(doomed), days_old)
        return len(doomed)

    # ─── Tasks ───────────────────────────────────────────────────────────

    async def create_tasks(self, tasks: list[Task]) -> int:
        self._check_open()
        async with self._lock:
            for task in tasks:
                self._batch(task.batch_id)
                self._tasks[task.id] = task.model_copy(deep=True)
        return len(tasks)

    async def get_task(self, task_id: str) -> Task:
        return self._task(task_id).model_copy(deep=True)

    async def update_task_status(self, task_id: str, status: TaskStatus, extras: TaskUpdate | None = None) -> Task:
        async with self._lock:
            task = self._task(task_id)
            task.status = status
            if extras is not None:
                for name, value in extras.model_dump(exclude_unset=True).items():
                    setattr(task, name, value)
            now = utcnow()
            if status == TaskStatus.PROCESSING:
                task.started_at = now
            if status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                task.completed_at = now
            return task.model_copy(deep=True)

    async def cancel_pending_tasks(self, batch_id: str) -> int:
        """Mark every not-yet-started task of the batch CANCELLED; returns how many."""
        async with self._lock:
            self._batch(batch_id)
            count = 0
            for task in self._tasks.values():
                if task.batch_id == batch_id and task.status in NOT_STARTED_TASK_STATUSES:
                    task.status = TaskStatus.CANCELLED
                    task.last_error = "Batch cancelled"
                    count += 1
            return count

    async def list_tasks(self, batch_id: str, status: TaskStatus | None = None) -> list[Task]:
        self._batch(batch_id)
        tasks = [t for t in self._tasks.values() if t.batch_id == batch_id and (status is None or t.status == status)]
        tasks.sort(key=lambda t: (t.question_index, t.field, t.table_index))
        return [t.model_copy(deep=True) for t in tasks]

    async def completed_tasks_by_question(self, batch_id: str) -> dict[int, list[Task]]:
        grouped: dict[int, list[Task]] = {}
        for task in await self.list_tasks(batch_id, TaskStatus.COMPLETED):
            grouped.setdefault(task.question_index, []).append(task)
        return grouped

    # ─── Logs ────────────────────────────────────────────────────────────

    async def create_log(self, batch_id: str, level: LogLevel, message: str, **extras) -> ProcessLog:
        entry = ProcessLog(batch_id=batch_id, level=level, message=message, **extras)
        async with self._lock:
            self._batch(batch_id)
            self._logs.append(entry)
        return entry

    async def get_logs(
        self, batch_id: str, level: LogLevel | None = None, limit: int = 100, offset: int = 0
    ) -> list[ProcessLog]:
        """Newest first, optionally filtered by level."""
        self._batch(batch_id)
        entries = [e for e in reversed(self._logs) if e.batch_id == batch_id and (level is None or e.level == level)]
        return entries[offset : offset + limit]

"""Job handler: one queued job drives one task through the repair protocol.

Every expected result comes back as a ``JobOutcome``; only store errors
propagate, and those are left to the queue's redelivery.  After every
terminal task the batch is checked for completion by counting terminal tasks,
since workers finish in any order.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path

from tablerepair.config import Settings
from tablerepair.jobs.models import (
    BatchCounters,
    BatchPhase,
    BatchStatus,
    JobPayload,
    LogLevel,
    Task,
    TaskStatus,
    TaskUpdate,
    utcnow,
)
from tablerepair.jobs.output import generate_output_file
from tablerepair.jobs.queue import Job, Requeue
from tablerepair.jobs.store import Store
from tablerepair.repair.analysis import count_expected_cols
from tablerepair.repair.protocol import TableRepairer
from tablerepair.repair.schema import RepairResult, Strategy

logger = logging.getLogger(__name__)

# Tables flagged with this type are removed instead of repaired
REMOVE_ISSUE_TYPE = "CONTENT_SWALLOW"


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"  # task already terminal or batch cancelled before start
    DISCARDED = "discarded"  # batch cancelled while the repair was running


@dataclass
class JobOutcome:
    kind: OutcomeKind
    task_id: str
    error: str | None = None
    requeue: Requeue | None = None


def backoff_delay_ms(attempts: int, base_ms: int = 5000) -> int:
    """Delay before the next attempt after *attempts* attempts: ``base × 2^attempts``."""
    return base_ms * 2**attempts


class RepairWorker:
    def __init__(self, store: Store, repairer: TableRepairer, settings: Settings):
        self.store = store
        self.repairer = repairer
        self.settings = settings

    async def handle(self, job: Job) -> JobOutcome:
        """Process one job.  Suitable as a ``WorkerPool`` handler."""
        payload = job.payload
        task = await self.store.get_task(payload.task_id)
        if task.is_terminal:
            logger.debug("Task %s already %s, skipping", task.id, task.status.value)
            return JobOutcome(OutcomeKind.SKIPPED, task.id)

        batch = await self.store.get_batch(task.batch_id)
        if batch.status == BatchStatus.CANCELLED:
            await self.store.update_task_status(task.id, TaskStatus.CANCELLED, TaskUpdate(last_error="Batch cancelled"))
            return JobOutcome(OutcomeKind.SKIPPED, task.id)

        attempts = task.attempts + 1
        logger.info(
            "Processing task %s (q%d/%s/t%d), attempt %d", task.id, task.question_index, task.field, task.table_index, attempts
        )
        task = await self.store.update_task_status(
            task.id, TaskStatus.PROCESSING, TaskUpdate(attempts=attempts, job_id=job.key)
        )

        result = await self._run_repair(task, batch.strategy)

        # A cancellation that landed while the repair ran wins over its result
        batch = await self.store.get_batch(task.batch_id)
        if batch.status == BatchStatus.CANCELLED:
            await self.store.update_task_status(task.id, TaskStatus.CANCELLED, TaskUpdate(last_error="Batch cancelled"))
            logger.info("Task %s finished after batch %s was cancelled; result discarded", task.id, batch.id)
            return JobOutcome(OutcomeKind.DISCARDED, task.id)

        if result.success:
            outcome = await self._complete(task, result)
        elif attempts < task.max_attempts:
            return await self._schedule_retry(task, attempts, result.error, payload)
        else:
            outcome = await self._fail(task, result.error)

        await self.check_batch_completion(task.batch_id)
        return outcome

    async def _run_repair(self, task: Task, strategy: Strategy) -> RepairResult:
        if task.issue_type == REMOVE_ISSUE_TYPE:
            logger.info("Task %s wraps layout content; removing table without a model call", task.id)
            return RepairResult(issue_id=task.id, original_html=task.raw_html, repaired_html="", success=True)
        return await self.repairer.repair(
            task.id, task.raw_html, count_expected_cols(task.raw_html), task.context, strategy
        )

    async def _complete(self, task: Task, result: RepairResult) -> JobOutcome:
        await self.store.update_task_status(
            task.id,
            TaskStatus.COMPLETED,
            TaskUpdate(
                repaired_html=result.repaired_html,
                provider=result.provider,
                tokens_used=result.usage.total_tokens,
                cost_brl=result.cost_brl,
            ),
        )
        await self.store.increment_batch_counters(
            task.batch_id,
            BatchCounters(success_count=1, tokens_used=result.usage.total_tokens, cost_brl=result.cost_brl),
        )
        await self.store.create_log(
            task.batch_id,
            LogLevel.INFO,
            "Table repaired successfully",
            task_id=task.id,
            question_index=task.question_index,
            field=task.field,
            metadata={"provider": result.provider, "tokens": result.usage.total_tokens, "cost": result.cost_brl},
        )
        logger.info("Task %s completed (provider=%s, tokens=%d)", task.id, result.provider, result.usage.total_tokens)
        return JobOutcome(OutcomeKind.COMPLETED, task.id)

    async def _schedule_retry(self, task: Task, attempts: int, error: str | None, payload: JobPayload) -> JobOutcome:
        delay_ms = backoff_delay_ms(attempts, self.settings.retry_base_delay_ms)
        await self.store.update_task_status(
            task.id,
            TaskStatus.RETRY,
            TaskUpdate(last_error=error, next_retry_at=utcnow() + timedelta(milliseconds=delay_ms)),
        )
        await self.store.create_log(
            task.batch_id,
            LogLevel.WARN,
            f"Table repair failed, retrying in {delay_ms} ms",
            task_id=task.id,
            question_index=task.question_index,
            field=task.field,
            metadata={"error": error, "attempt": attempts},
        )
        logger.warning("Task %s failed (attempt %d), retrying in %d ms: %s", task.id, attempts, delay_ms, error)
        follow_up = payload.model_copy(update={"attempt": attempts})
        return JobOutcome(
            OutcomeKind.RETRY,
            task.id,
            error=error,
            requeue=Requeue(payload=follow_up, delay_s=delay_ms / 1000, priority=task.question_index),
        )

    async def _fail(self, task: Task, error: str | None) -> JobOutcome:
        error = error or "Repair failed"
        await self.store.update_task_status(task.id, TaskStatus.FAILED, TaskUpdate(last_error=error))
        await self.store.increment_batch_counters(task.batch_id, BatchCounters(failed_count=1))
        await self.store.create_log(
            task.batch_id,
            LogLevel.ERROR,
            f"Table repair failed after {task.max_attempts} attempts",
            task_id=task.id,
            question_index=task.question_index,
            field=task.field,
            metadata={"error": error},
        )
        logger.error("Task %s permanently failed: %s", task.id, error)
        return JobOutcome(OutcomeKind.FAILED, task.id, error=error)

    async def check_batch_completion(self, batch_id: str) -> bool:
        """Complete the batch once every task is COMPLETED or FAILED.  True if this call completed it."""
        progress = await self.store.get_batch_progress(batch_id)
        if progress.completed_tasks + progress.failed_tasks < progress.total_tasks:
            return False
        if not await self.store.claim_batch_completion(batch_id):
            return False

        logger.info(
            "Batch %s processing complete (%d succeeded, %d failed)",
            batch_id,
            progress.completed_tasks,
            progress.failed_tasks,
        )
        await generate_output_file(self.store, batch_id, Path(self.settings.output_dir))
        await self.store.update_batch_status(batch_id, BatchStatus.COMPLETED, BatchPhase.DONE)
        await self.store.create_log(
            batch_id,
            LogLevel.INFO,
            "Batch completed",
            metadata={"completed": progress.completed_tasks, "failed": progress.failed_tasks},
        )
        return True

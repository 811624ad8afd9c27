"""Batch intake, cancellation and read-side listings.

Intake takes an uploaded question document through the first half of the
batch lifecycle: save it, audit it, turn the selected issues into one task
per (question, field, table) triple, and hand those tasks to the queue.
Workers carry the batch the rest of the way.
"""

import json
import logging
import time
from pathlib import Path

from pydantic import BaseModel

from tablerepair.audit.coordinator import FIELD_MARKDOWN_ISSUE, audit_data, get_questions
from tablerepair.audit.schema import AuditStats, Issue
from tablerepair.config import Settings
from tablerepair.errors import IntakeError, InvalidBatchStateError
from tablerepair.jobs.models import (
    Batch,
    BatchPhase,
    BatchProgress,
    BatchStatus,
    JobPayload,
    LogLevel,
    ProcessLog,
    Task,
    TaskStatus,
)
from tablerepair.jobs.output import generate_output_file
from tablerepair.jobs.queue import JobQueue
from tablerepair.jobs.store import Store
from tablerepair.repair.schema import RepairContext, Strategy

logger = logging.getLogger(__name__)

ENUNCIADO_CONTEXT_CHARS = 1000
TEXTO_CONTEXT_CHARS = 2000
ISSUE_PREVIEW_CHARS = 500


class IntakeResult(BaseModel):
    batch_id: str
    status: BatchStatus
    phase: BatchPhase
    stats: AuditStats
    issues_selected: int
    tasks_created: int
    dry_run: bool


class IssueView(BaseModel):
    """One task as shown in issue listings; repaired markup is truncated."""

    id: str
    question_index: int
    qid: str
    field: str
    table_index: int
    issue_type: str
    severity: str
    status: TaskStatus
    attempts: int
    last_error: str | None = None
    provider: str | None = None
    repaired_html: str | None = None


def _text(question: dict, key: str, limit: int | None = None) -> str | None:
    value = question.get(key)
    if value is None:
        return None
    value = str(value)
    return value[:limit] if limit is not None else value


def build_context(question: dict, qid: str, field: str) -> RepairContext:
    return RepairContext(
        qid=qid,
        field=field,
        materia=_text(question, "materia"),
        assunto=_text(question, "assunto"),
        topico=_text(question, "topico"),
        enunciado=_text(question, "enunciado", ENUNCIADO_CONTEXT_CHARS),
        texto_associado=_text(question, "texto_associado", TEXTO_CONTEXT_CHARS),
    )


def build_tasks(batch_id: str, questions: list[dict], issues: list[Issue], max_attempts: int) -> list[Task]:
    """One task per (question, field, table); the first issue seen decides type and severity.

    Field-level markdown issues get no task: the field has no table to put a
    repair back into, so they are left for manual review.
    """
    tasks: dict[tuple[int, str, int], Task] = {}
    for issue in issues:
        if issue.type == FIELD_MARKDOWN_ISSUE:
            continue
        key = (issue.question_index, issue.field, issue.table_index)
        if key in tasks:
            continue
        question = questions[issue.question_index]
        qid = str(issue.qid)
        tasks[key] = Task(
            batch_id=batch_id,
            question_index=issue.question_index,
            qid=qid,
            field=issue.field,
            table_index=issue.table_index,
            issue_type=issue.type,
            severity=issue.severity.value,
            raw_html=issue.raw_html,
            context=build_context(question, qid, issue.field),
            max_attempts=max_attempts,
        )
    return list(tasks.values())


def job_payload(task: Task) -> JobPayload:
    return JobPayload(
        task_id=task.id,
        batch_id=task.batch_id,
        question_index=task.question_index,
        qid=task.qid,
        field=task.field,
        table_index=task.table_index,
        raw_html=task.raw_html,
        context=task.context,
    )


class BatchService:
    def __init__(self, store: Store, queue: JobQueue, settings: Settings):
        self.store = store
        self.queue = queue
        self.settings = settings

    # ─── Intake ──────────────────────────────────────────────────────────

    async def submit_file(
        self,
        path: Path,
        strategy: Strategy | str = Strategy.HYBRID,
        dry_run: bool = False,
        severity_filter: str = "BAD",
    ) -> IntakeResult:
        path = Path(path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise IntakeError(f"Cannot read {path}: {exc}") from exc
        return await self.submit(content, path.name, strategy, dry_run, severity_filter)

    async def submit(
        self,
        content: bytes,
        file_name: str,
        strategy: Strategy | str = Strategy.HYBRID,
        dry_run: bool = False,
        severity_filter: str = "BAD",
    ) -> IntakeResult:
        """Save, audit and enqueue one uploaded document.

        Raises ``IntakeError`` before anything is stored when the upload is
        too large, is not JSON, or holds no questions.
        """
        strategy = Strategy.parse(strategy)
        severity_filter = severity_filter.upper()
        if severity_filter not in ("BAD", "ALL"):
            raise IntakeError(f"Unknown severity filter: {severity_filter}")

        if len(content) > self.settings.max_file_size_bytes:
            raise IntakeError(f"File exceeds the {self.settings.max_file_size_mb} MB limit")
        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise IntakeError(f"Invalid JSON file: {exc}") from exc
        questions = get_questions(data)
        if not questions:
            raise IntakeError("No questions found in file")

        upload_path = Path(self.settings.upload_dir) / f"{int(time.time() * 1000)}_{Path(file_name).name}"
        upload_path.parent.mkdir(parents=True, exist_ok=True)
        upload_path.write_bytes(content)

        batch = await self.store.create_batch(
            Batch(
                file_name=file_name,
                file_size=len(content),
                input_file_path=str(upload_path),
                strategy=strategy,
                dry_run=dry_run,
                severity_filter=severity_filter,
            )
        )
        await self.store.update_batch_status(batch.id, BatchStatus.PROCESSING, BatchPhase.AUDIT)
        await self.store.create_log(batch.id, LogLevel.INFO, "Audit started", metadata={"questions": len(questions)})

        report = audit_data(data)
        selected = report.filtered(severity_filter)
        await self.store.set_batch_totals(
            batch.id,
            total_questions=len(questions),
            total_tables=report.stats.total_tables,
            total_issues=len(selected),
        )
        await self.store.create_log(
            batch.id,
            LogLevel.INFO,
            "Audit finished",
            metadata={"tables": report.stats.total_tables, "bad": report.stats.bad, "warn": report.stats.warn},
        )

        if dry_run:
            batch = await self.store.update_batch_status(batch.id, BatchStatus.COMPLETED, BatchPhase.DONE)
            logger.info("Dry run for batch %s: %d issues selected, nothing enqueued", batch.id, len(selected))
            return self._result(batch, report.stats, len(selected), 0)

        tasks = build_tasks(batch.id, questions, selected, self.settings.max_retry_attempts)
        unapplicable = [i.id for i in selected if i.type == FIELD_MARKDOWN_ISSUE]
        if unapplicable:
            await self.store.create_log(
                batch.id,
                LogLevel.WARN,
                f"{len(unapplicable)} field(s) hold a Markdown table; not repaired in place",
                metadata={"issues": unapplicable},
            )
            logger.warning("Batch %s: %d Markdown fields left for manual review", batch.id, len(unapplicable))
        if not tasks:
            await self.store.update_batch_status(batch.id, BatchStatus.PROCESSING, BatchPhase.EXPORT)
            await generate_output_file(self.store, batch.id, Path(self.settings.output_dir))
            batch = await self.store.update_batch_status(batch.id, BatchStatus.COMPLETED, BatchPhase.DONE)
            await self.store.create_log(batch.id, LogLevel.INFO, "No tables to repair; batch completed")
            logger.info("Batch %s has no tables to repair", batch.id)
            return self._result(batch, report.stats, len(selected), 0)

        await self.store.create_tasks(tasks)
        # REPAIR is set before any job exists; a worker may complete the batch right after enqueue
        batch = await self.store.update_batch_status(batch.id, BatchStatus.PROCESSING, BatchPhase.REPAIR)
        await self.queue.enqueue_many(job_payload(task) for task in tasks)
        await self.store.create_log(batch.id, LogLevel.INFO, f"{len(tasks)} repair tasks enqueued")
        logger.info("Batch %s: %d issues selected, %d tasks enqueued", batch.id, len(selected), len(tasks))
        return self._result(batch, report.stats, len(selected), len(tasks))

    @staticmethod
    def _result(batch: Batch, stats: AuditStats, issues_selected: int, tasks_created: int) -> IntakeResult:
        return IntakeResult(
            batch_id=batch.id,
            status=batch.status,
            phase=batch.phase,
            stats=stats,
            issues_selected=issues_selected,
            tasks_created=tasks_created,
            dry_run=batch.dry_run,
        )

    # ─── Cancellation ────────────────────────────────────────────────────

    async def cancel_batch(self, batch_id: str) -> int:
        """Cancel a running batch and return how many queued jobs were removed.

        Tasks already in a worker's hands are left to finish; the worker
        sees the CANCELLED batch and discards their result.
        """
        batch = await self.store.get_batch(batch_id)
        if batch.is_terminal:
            raise InvalidBatchStateError(f"Batch {batch_id} is already {batch.status.value}")

        await self.store.update_batch_status(batch_id, BatchStatus.CANCELLED)
        removed = await self.queue.remove_where(lambda job: job.payload.batch_id == batch_id)
        cancelled = await self.store.cancel_pending_tasks(batch_id)
        await self.store.create_log(
            batch_id,
            LogLevel.WARN,
            "Batch cancelled",
            metadata={"jobs_removed": removed, "tasks_cancelled": cancelled},
        )
        logger.info("Batch %s cancelled (%d jobs removed, %d tasks cancelled)", batch_id, removed, cancelled)
        return removed

    # ─── Read Side ───────────────────────────────────────────────────────

    async def get_progress(self, batch_id: str) -> BatchProgress:
        progress = await self.store.get_batch_progress(batch_id)
        progress.queue = await self.queue.counts()
        return progress

    async def list_issues(
        self,
        batch_id: str,
        severity: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[IssueView]:
        tasks = await self.store.list_tasks(batch_id, status)
        if severity is not None:
            tasks = [t for t in tasks if t.severity == severity.upper()]
        return [
            IssueView(
                id=t.id,
                question_index=t.question_index,
                qid=t.qid,
                field=t.field,
                table_index=t.table_index,
                issue_type=t.issue_type,
                severity=t.severity,
                status=t.status,
                attempts=t.attempts,
                last_error=t.last_error,
                provider=t.provider,
                repaired_html=t.repaired_html[:ISSUE_PREVIEW_CHARS] if t.repaired_html is not None else None,
            )
            for t in tasks[offset : offset + limit]
        ]

    async def list_logs(
        self, batch_id: str, level: LogLevel | None = None, limit: int = 100, offset: int = 0
    ) -> list[ProcessLog]:
        return await self.store.get_logs(batch_id, level, limit, offset)

    async def cleanup(self, days_old: int = 30) -> int:
        return await self.store.delete_old_batches(days_old)

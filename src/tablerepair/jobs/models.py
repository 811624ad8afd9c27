"""Pydantic records for batches, tasks, process logs and queue payloads."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tablerepair.repair.schema import RepairContext, Strategy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ─── Enums ───────────────────────────────────────────────────────────────────


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BatchPhase(str, Enum):
    UPLOAD = "UPLOAD"
    AUDIT = "AUDIT"
    REPAIR = "REPAIR"
    VALIDATION = "VALIDATION"
    EXPORT = "EXPORT"
    DONE = "DONE"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


TERMINAL_BATCH_STATUSES = (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED)
TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

# Tasks that no worker has picked up (or that wait for a scheduled retry)
NOT_STARTED_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.RETRY)


# ─── Records ─────────────────────────────────────────────────────────────────


class Batch(BaseModel):
    """One uploaded document under processing, with its running counters."""

    id: str = Field(default_factory=new_id)
    file_name: str
    file_size: int = 0
    input_file_path: str
    strategy: Strategy = Strategy.HYBRID
    dry_run: bool = False
    severity_filter: str = "BAD"
    status: BatchStatus = BatchStatus.PENDING
    phase: BatchPhase = BatchPhase.UPLOAD

    total_questions: int = 0
    total_tables: int = 0
    total_issues: int = 0
    success_count: int = 0
    failed_count: int = 0
    tokens_used: int = 0
    cost_brl: float = 0.0

    output_file_path: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES


class Task(BaseModel):
    """Repair work for one (question index, field, table index) triple."""

    id: str = Field(default_factory=new_id)
    batch_id: str
    question_index: int
    qid: str
    field: str
    table_index: int
    issue_type: str
    severity: str
    raw_html: str
    context: RepairContext

    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    next_retry_at: datetime | None = None
    job_id: str | None = None

    repaired_html: str | None = None
    provider: str | None = None
    tokens_used: int = 0
    cost_brl: float = 0.0

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class TaskUpdate(BaseModel):
    """Optional extras written together with a task status change."""

    model_config = ConfigDict(extra="forbid")

    repaired_html: str | None = None
    provider: str | None = None
    tokens_used: int | None = None
    cost_brl: float | None = None
    last_error: str | None = None
    attempts: int | None = None
    next_retry_at: datetime | None = None
    job_id: str | None = None


class BatchCounters(BaseModel):
    """Relative increments applied atomically to a batch."""

    success_count: int = 0
    failed_count: int = 0
    tokens_used: int = 0
    cost_brl: float = 0.0


class ProcessLog(BaseModel):
    """Append-only diagnostic record kept with the batch."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    batch_id: str
    level: LogLevel
    message: str
    task_id: str | None = None
    question_index: int | None = None
    field: str | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class BatchProgress(BaseModel):
    batch_id: str
    status: BatchStatus
    phase: BatchPhase
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    cancelled_tasks: int = 0
    percentage: int
    tokens_used: int
    cost_brl: float
    output_file_ready: bool = False
    queue: dict[str, int] | None = None


class JobPayload(BaseModel):
    """Data carried by a queued repair job; keyed in the queue by ``task_id``."""

    task_id: str
    batch_id: str
    question_index: int
    qid: str
    field: str
    table_index: int
    raw_html: str
    context: RepairContext
    attempt: int = 0

"""Pydantic models produced by the audit.

Issues are immutable once created; the job layer turns them into repair tasks
keyed by (question index, field, table index).
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    BAD = "BAD"  # repair required
    WARN = "WARN"  # informational, repaired only when the caller asks for all severities


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    row: int | None = None
    col: int | None = None


class Issue(BaseModel):
    """One detected defect in one top-level table (or a whole field, for markdown tables)."""

    model_config = ConfigDict(frozen=True)

    id: str
    qid: str | int
    question_index: int
    field: str
    table_index: int
    severity: Severity
    type: str
    title: str
    location: Location = Field(default_factory=Location)
    raw_html: str
    full_text: str


class AuditStats(BaseModel):
    time: int  # milliseconds
    total_tables: int
    bad: int
    warn: int


class AuditReport(BaseModel):
    stats: AuditStats
    issues: list[Issue]

    def filtered(self, severity_filter: str = "BAD") -> list[Issue]:
        """Return the issues selected by a caller filter: ``"BAD"`` (default) or ``"ALL"``."""
        if severity_filter.upper() == "ALL":
            return list(self.issues)
        return [i for i in self.issues if i.severity == Severity.BAD]

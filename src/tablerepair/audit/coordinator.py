"""Document-level audit: questions → fields → top-level tables.

Issues are addressed by (question index, field, table index).  The table
index is the position of a top-level table within its field, which is the
same index output reconstruction uses to put a repaired table back.
"""

import logging
import time

from tablerepair.audit.detector import TableContext, analyze_table
from tablerepair.audit.markup import top_level_table_sources
from tablerepair.audit.patterns import FIELDS_TO_AUDIT, MARKDOWN_TABLE_RE, TABLE_TAG_RE
from tablerepair.audit.schema import AuditReport, AuditStats, Issue, Location, Severity

logger = logging.getLogger(__name__)

# Characters of a field kept as raw_html for field-level markdown issues
MARKDOWN_EXCERPT_CHARS = 600

# Field-level issue: the field holds no <table> an in-place repair could replace
FIELD_MARKDOWN_ISSUE = "MARKDOWN_TABLE_IN_FIELD"

_ID_KEYS = ("id", "id_pasta", "id_resolucao")


def get_question_id(question: dict) -> str | int:
    """Return the first non-empty of ``id``, ``id_pasta``, ``id_resolucao``, else ``"UNKNOWN"``."""
    for key in _ID_KEYS:
        value = question.get(key)
        if value is not None and value != "":
            return value
    return "UNKNOWN"


def get_questions(data) -> list[dict]:
    """Accept either a bare list of questions or an object wrapping them under ``questoes``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("questoes") or []
    return []


def audit_field(value: str, qid: str | int, question_index: int, field: str) -> tuple[list[Issue], int]:
    """Audit one field's markup.  Returns (issues, number of top-level tables analysed)."""
    issues: list[Issue] = []

    if MARKDOWN_TABLE_RE.search(value) and not TABLE_TAG_RE.search(value):
        issues.append(
            Issue(
                id=f"q{question_index}-{field}-md",
                qid=qid,
                question_index=question_index,
                field=field,
                table_index=0,
                severity=Severity.BAD,
                type=FIELD_MARKDOWN_ISSUE,
                title="Field contains Markdown table instead of HTML",
                location=Location(),
                raw_html=value[:MARKDOWN_EXCERPT_CHARS],
                full_text=value,
            )
        )

    sources = top_level_table_sources(value)
    for idx, source in enumerate(sources):
        context = TableContext(qid=qid, question_index=question_index, field=field, table_index=idx, full_text=value)
        issues.extend(analyze_table(source, context))

    return issues, len(sources)


def audit_data(data) -> AuditReport:
    """Audit every auditable field of every question and aggregate the statistics."""
    start = time.perf_counter()
    issues: list[Issue] = []
    table_count = 0

    for index, question in enumerate(get_questions(data)):
        if not isinstance(question, dict):
            logger.debug("Skipping non-object question at index %d", index)
            continue
        qid = get_question_id(question)

        for field in FIELDS_TO_AUDIT:
            value = question.get(field)
            if not value or not isinstance(value, str):
                continue
            field_issues, field_tables = audit_field(value, qid, index, field)
            issues.extend(field_issues)
            table_count += field_tables

    stats = AuditStats(
        time=round((time.perf_counter() - start) * 1000),
        total_tables=table_count,
        bad=sum(1 for i in issues if i.severity == Severity.BAD),
        warn=sum(1 for i in issues if i.severity == Severity.WARN),
    )
    logger.info(
        "Audit finished: %d tables, %d BAD, %d WARN in %d ms", stats.total_tables, stats.bad, stats.warn, stats.time
    )
    return AuditReport(stats=stats, issues=issues)

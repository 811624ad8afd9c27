"""Output reconstruction: put repaired tables back into the original document.

Tasks address tables positionally (question index, field, top-level table
index).  Within one field, tasks are applied from the highest table index
down so that removing a table never shifts the position of a table still
waiting to be replaced.
"""

import json
import logging
import time
from pathlib import Path

from tablerepair.audit.coordinator import get_questions
from tablerepair.audit.markup import find_top_level_tables, parse_html
from tablerepair.jobs.models import Task
from tablerepair.jobs.store import Store

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = "_POS_TABELA"


def replace_table(full_html: str, new_table_html: str, table_index: int) -> str:
    """Replace (or, for empty markup, remove) the Nth top-level table of *full_html*.

    An out-of-range index, or replacement markup without a ``<table>``,
    leaves the field unchanged.
    """
    soup = parse_html(full_html)
    tables = find_top_level_tables(soup)
    if table_index >= len(tables):
        logger.warning("Table index %d out of bounds (%d tables)", table_index, len(tables))
        return full_html

    target = tables[table_index]
    if new_table_html.strip() == "":
        target.decompose()
        return str(soup)

    new_table = parse_html(new_table_html).find("table")
    if new_table is None:
        logger.warning("Replacement for table %d has no <table> element; left unchanged", table_index)
        return full_html
    target.replace_with(new_table.extract())
    return str(soup)


def apply_question_repairs(question: dict, tasks: list[Task]) -> bool:
    """Apply a question's completed repairs in place.  Returns True if any field changed."""
    changed = False
    for task in sorted(tasks, key=lambda t: (t.field, -t.table_index)):
        if task.repaired_html is None or task.repaired_html == task.raw_html:
            continue
        original = question.get(task.field)
        if not isinstance(original, str) or not original:
            continue
        updated = replace_table(original, task.repaired_html, task.table_index)
        if updated != original:
            question[task.field] = updated
            changed = True
    return changed


def rebuild_document(data, tasks_by_question: dict[int, list[Task]]) -> tuple[object, int]:
    """Return (document with repairs applied, number of modified questions).

    The result keeps the upload's shape: a bare list stays a list, a wrapped
    object keeps every other key.  A question that fails is logged and left
    as it was.
    """
    questions = get_questions(data)
    modified = 0
    for question_index, tasks in sorted(tasks_by_question.items()):
        if question_index >= len(questions) or not isinstance(questions[question_index], dict):
            logger.warning("Question %d not found in the original document", question_index)
            continue
        try:
            if apply_question_repairs(questions[question_index], tasks):
                modified += 1
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Failed to rebuild question %d: %s", question_index, exc)

    if isinstance(data, list):
        return questions, modified
    return {**data, "questoes": questions}, modified


def output_file_name(file_name: str, now_ms: int | None = None) -> str:
    """``{epoch_ms}_{stem}_POS_TABELA.json`` for an uploaded ``{stem}.json``."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{now_ms}_{Path(file_name).stem}{OUTPUT_SUFFIX}.json"


async def generate_output_file(store: Store, batch_id: str, output_dir: Path) -> str | None:
    """Write the reconstructed document for a batch and record its path.

    File and parse errors are logged and return None; the caller still
    completes the batch.
    """
    batch = await store.get_batch(batch_id)
    try:
        original = json.loads(Path(batch.input_file_path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to read original file for batch %s: %s", batch_id, exc)
        return None

    tasks_by_question = await store.completed_tasks_by_question(batch_id)
    document, modified = rebuild_document(original, tasks_by_question)

    output_path = Path(output_dir) / output_file_name(batch.file_name)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to write output file for batch %s: %s", batch_id, exc)
        return None

    await store.set_batch_output_file(batch_id, str(output_path))
    logger.info("Output file generated for batch %s: %s (%d questions modified)", batch_id, output_path, modified)
    return str(output_path)

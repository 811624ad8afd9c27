"""Issue detection for a single HTML table.

``analyze_table`` runs a fixed battery of structural and content rules against
one table's markup and its logical grid.  Issues come back in rule-evaluation
order.  Only the first few rules short-circuit: content-swallow, markdown,
missing ``<table>`` and row-less tables stop the analysis because nothing
after them is meaningful.
"""

import logging
from dataclasses import dataclass, field

from bs4 import Tag

from tablerepair.audit.classifiers import (
    check_latex_balance,
    is_financial_table,
    is_generic_header,
    is_placeholder_header,
    needs_latex_check,
)
from tablerepair.audit.grid import GridCell, TableGrid, build_grid
from tablerepair.audit.markup import (
    cell_has_content,
    cell_text,
    direct_child,
    inner_html,
    line_offsets,
    own_rows,
    parse_html,
    row_cells,
    safe_int,
    source_span,
)
from tablerepair.audit.patterns import (
    AI_LAZY_RE,
    BROKEN_ENTITY_RE,
    BROKEN_STYLE_DECL_RE,
    BROKEN_STYLE_VALUE_RE,
    CONTENT_SWALLOW_RE,
    MARKDOWN_SEPARATOR_RE,
    SPLIT_CELL_RE,
    SPLIT_OPERATOR_RE,
    TRUNCATED_RE,
)
from tablerepair.audit.schema import Issue, Location, Severity

logger = logging.getLogger(__name__)

BAD = Severity.BAD
WARN = Severity.WARN

# Minimum number of trailing empty columns reported as a single aggregate issue
TRAILING_GHOST_THRESHOLD = 3


@dataclass(frozen=True)
class TableContext:
    """Where a table lives: question, field and positional index within the field."""

    qid: str | int
    question_index: int
    field: str
    table_index: int
    full_text: str


@dataclass
class _IssueSink:
    """Collects issues for one table and numbers them deterministically."""

    context: TableContext
    raw_html: str
    issues: list[Issue] = field(default_factory=list)

    def add(self, severity: Severity, issue_type: str, title: str, row: int | None = None, col: int | None = None):
        ctx = self.context
        self.issues.append(
            Issue(
                id=f"q{ctx.question_index}-{ctx.field}-t{ctx.table_index}-{len(self.issues)}",
                qid=ctx.qid,
                question_index=ctx.question_index,
                field=ctx.field,
                table_index=ctx.table_index,
                severity=severity,
                type=issue_type,
                title=title,
                location=Location(row=row, col=col),
                raw_html=self.raw_html,
                full_text=ctx.full_text,
            )
        )


# ─── Row Identification ──────────────────────────────────────────────────────


def split_header_and_body(table: Tag) -> tuple[Tag | None, list[Tag]]:
    """Return (header row, body rows) for the table's own rows.

    With a ``<thead>`` the header is its first row and the body is every row
    outside it.  Without one, the first row is taken as the header.
    """
    rows = own_rows(table)
    thead = direct_child(table, "thead")
    if thead is not None:
        head_rows = thead.find_all("tr", recursive=False)
        header_row = head_rows[0] if head_rows else None
        body_rows = [r for r in rows if r.parent is not thead]
        return header_row, body_rows
    if not rows:
        return None, []
    return rows[0], rows[1:]


# ─── Rule Groups ─────────────────────────────────────────────────────────────


def _check_headers(sink: _IssueSink, header_cells: list[Tag], header_texts: list[str]) -> None:
    """Per-header-cell checks, then placeholder and duplicate checks across the header row."""
    for idx, el in enumerate(header_cells):
        txt = cell_text(el)

        if txt.endswith("($") or txt in (")", "$)"):
            sink.add(BAD, "SPLIT_HEADER", f'Suspicious Header Split: "{txt}"', row=0, col=idx)

        if not txt and not cell_has_content(el):
            sink.add(WARN, "HEADER_EMPTY", f"Empty Header (col {idx + 1})", col=idx)

        if needs_latex_check(txt):
            latex = check_latex_balance(txt)
            if latex.broken:
                sink.add(BAD, "HEADER_LATEX_BROKEN", f"Header LaTeX broken: {latex.reason} (col {idx + 1})", row=0, col=idx)

        if BROKEN_STYLE_VALUE_RE.search(inner_html(el)):
            sink.add(BAD, "HEADER_BROKEN_STYLE", f"Header has escaped HTML in style (col {idx + 1})", row=0, col=idx)

    placeholders = [h for h in header_texts if is_placeholder_header(h)]
    if len(placeholders) >= 2:
        sink.add(
            BAD,
            "MISSING_HEADER_TEXT",
            f"{len(placeholders)} headers are empty/placeholder - needs header names or colspan",
        )

    seen: set[str] = set()
    dups: list[str] = []
    for h in header_texts:
        if is_placeholder_header(h):
            continue
        if h in seen and h not in dups:
            dups.append(h)
        seen.add(h)
    if dups:
        sink.add(BAD, "HEADER_DUP", f"Duplicate Headers: {', '.join(dups)}")


def _check_ghost_columns(sink: _IssueSink, grid: TableGrid) -> None:
    """Flag columns that receive no content from any body row."""
    expected = grid.expected_cols
    has_content = grid.col_has_content[:expected]

    trailing = 0
    for has in reversed(has_content):
        if has:
            break
        trailing += 1

    if trailing >= TRAILING_GHOST_THRESHOLD:
        sink.add(BAD, "GHOST_COLUMNS", f"{trailing} trailing ghost columns detected")
        return

    for c_idx, has in enumerate(has_content):
        if has:
            continue
        header = grid.header_cell_at(c_idx)
        generic = header is None or is_generic_header(cell_text(header.el))
        severity = BAD if (c_idx == expected - 1 or generic) else WARN
        sink.add(severity, "GHOST_COLUMN", f"Ghost Column (Col {c_idx + 1} empty in all rows)", col=c_idx)


def _cell_source(cell: Tag, table_html: str, line_starts: list[int]) -> str:
    """The cell's markup as written, falling back to its serialized children."""
    bounds = source_span(cell, line_starts, len(table_html))
    if bounds is None:
        return inner_html(cell)
    return table_html[bounds[0] : bounds[1]]


def _check_cell(sink: _IssueSink, gc: GridCell, source: str, is_financial: bool) -> None:
    """Content rules for one body cell.

    Entity references are checked in *source*, the cell as written, because
    the parser has already resolved ``&amp;`` and friends in the text.
    """
    text = cell_text(gc.el)
    html = inner_html(gc.el)
    where = f"R{gc.row + 1}:C{gc.col + 1}"
    loc = {"row": gc.row, "col": gc.col}

    if SPLIT_CELL_RE.match(text):
        sink.add(BAD, "SPLIT_CELL", f'Split Cell ("{text}") at {where}', **loc)

    if SPLIT_OPERATOR_RE.match(text) and len(text) == 1:
        sink.add(BAD, "SPLIT_CELL", f'Split Operator ("{text}") at {where}', **loc)

    if AI_LAZY_RE.search(text):
        sink.add(BAD, "AI_LAZY", f'AI Placeholder: "{text}"', **loc)

    if needs_latex_check(text):
        latex = check_latex_balance(text)
        if latex.broken:
            sink.add(BAD, "LATEX_BROKEN", f"LaTeX broken ({latex.reason}) at {where}", **loc)

    if BROKEN_ENTITY_RE.search(source):
        sink.add(WARN, "BROKEN_ENTITY", f"Broken HTML entity at {where}", **loc)

    if BROKEN_STYLE_VALUE_RE.search(html):
        sink.add(BAD, "BROKEN_STYLE_VALUE", f"Cell has escaped HTML in style at {where}", **loc)

    if TRUNCATED_RE.search(text) and len(text) > 10:
        sink.add(WARN, "TRUNCATED_CONTENT", f"Content may be truncated at {where}", **loc)

    if not is_financial and text == "" and 0 < len(html) < 80 and ("\xa0" in html or "&nbsp;" in html):
        sink.add(WARN, "WHITESPACE_ONLY", f"Cell contains only whitespace/nbsp at {where}", **loc)


def _check_holes(sink: _IssueSink, grid: TableGrid, body_row_count: int) -> None:
    """Flag a column uncovered in a row while both its neighbours are covered.

    A column held by a rowspan from an earlier row counts as covered.
    """
    expected = grid.expected_cols
    by_row: dict[int, list[GridCell]] = {}
    for gc in grid.body_cells:
        by_row.setdefault(gc.row, []).append(gc)

    for r in range(body_row_count):
        placed = by_row.get(r, [])
        if len(placed) < 2:
            continue

        covered = [False] * expected
        for c in grid.reserved_cols[r]:
            if c < expected:
                covered[c] = True
        for gc in placed:
            for i in range(gc.colspan):
                if 0 <= gc.col + i < expected:
                    covered[gc.col + i] = True

        for c in range(1, expected - 1):
            if not covered[c] and covered[c - 1] and covered[c + 1]:
                sink.add(WARN, "CELL_HOLE", f"Potential missing cell at R{r + 1}:C{c + 1}", row=r, col=c)


# ─── Main Entry Point ────────────────────────────────────────────────────────


def _analyze(sink: _IssueSink, table_html: str) -> None:
    trimmed = table_html.strip()

    # ── 0. Layout content wrapped in a table: remove rather than repair ──
    if CONTENT_SWALLOW_RE.search(table_html):
        sink.add(BAD, "CONTENT_SWALLOW", "Table swallows layout content (Armadilha/Estratégia) -> AUTO-REMOVE")
        return

    # ── 1. Markdown instead of HTML ──
    if trimmed.startswith("|") or MARKDOWN_SEPARATOR_RE.search(trimmed):
        sink.add(BAD, "MARKDOWN_DETECTED", "Output is Markdown format (Expected HTML)")
        return

    # ── 2. Structural prerequisites ──
    table = parse_html(table_html).find("table")
    if table is None:
        if trimmed:
            sink.add(BAD, "INVALID_HTML", "No <table> tag found in output")
        return

    if not table.find("tr"):
        sink.add(WARN, "NO_DATA", "Table has no rows (<tr>)")
        return

    nested = table.find_all("table")
    if nested:
        sink.add(WARN, "NESTED_TABLE", f"Table contains {len(nested)} nested table(s) - verify structure")

    # ── 3. Header and body rows ──
    header_row, body_rows = split_header_and_body(table)
    header_cells = row_cells(header_row) if header_row is not None else []
    if not header_cells:
        sink.add(WARN, "NO_HEADER", "Table has no identifiable header row")

    grid = build_grid(header_row, body_rows)
    expected = grid.expected_cols
    header_texts = [cell_text(c).lower() for c in header_cells]
    is_financial = is_financial_table(header_texts)

    total_rows = (1 if header_row is not None else 0) + len(body_rows)
    if total_rows == 1 and expected == 1:
        txt = cell_text(header_cells[0]) if header_cells else ""
        if len(txt) < 100:
            sink.add(WARN, "TABLE_1x1", "Table is 1x1 - possible misuse for layout")

    if header_row is not None and not body_rows:
        sink.add(WARN, "EMPTY_TABLE", "Table has header but no data rows")

    # ── 4. Header row ──
    _check_headers(sink, header_cells, header_texts)

    # ── 5. Columns and rows ──
    if expected > 1 and body_rows:
        _check_ghost_columns(sink, grid)

    for r_idx, width in enumerate(grid.row_widths):
        if expected > 0 and width != expected:
            sink.add(BAD, "COL_MISMATCH", f"Row {r_idx + 1}: {width} logical cols (expected {expected})", row=r_idx)

    # ── 6. Cells ──
    line_starts = line_offsets(table_html)
    for gc in grid.body_cells:
        _check_cell(sink, gc, _cell_source(gc.el, table_html, line_starts), is_financial)

    if not is_financial:
        _check_holes(sink, grid, len(body_rows))

    # ── 7. Attribute sanity ──
    for el in table.find_all(rowspan=True):
        rs = safe_int(el.get("rowspan"), 1)
        if rs > total_rows:
            sink.add(BAD, "INVALID_ROWSPAN", f"Rowspan ({rs}) exceeds table rows ({total_rows})")

    for el in table.find_all(style=True):
        if BROKEN_STYLE_DECL_RE.search(el.get("style", "")):
            sink.add(WARN, "BROKEN_STYLE", "Broken inline style detected")


def analyze_table(table_html: str, context: TableContext) -> list[Issue]:
    """Return every issue found in one table's markup, in rule-evaluation order.

    Markup that cannot be analysed at all degrades to a single ``INVALID_HTML``
    issue; this function never raises for malformed input.
    """
    sink = _IssueSink(context=context, raw_html=table_html)
    try:
        _analyze(sink, table_html)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.warning(
            "Table analysis failed for q%d/%s/t%d: %s", context.question_index, context.field, context.table_index, exc
        )
        sink.issues.clear()
        sink.add(BAD, "INVALID_HTML", f"Table markup could not be analysed: {exc}")
    return sink.issues

"""Logical grid reconstruction for HTML tables.

Resolves ``colspan``/``rowspan`` geometry into logical column positions so the
detector can reason about row widths and per-column content independently of
how the markup happens to be written.

Placement rule: cells fill each body row left to right, skipping any column
still reserved by a rowspan from an earlier row.  A cell with rowspan ``r``
reserves its columns for the next ``r - 1`` rows.
"""

from dataclasses import dataclass, field

from bs4 import Tag

from tablerepair.audit.markup import cell_has_content, row_cells, span


@dataclass
class GridCell:
    """One cell placed at its logical (post-span) coordinates.  Header cells use row -1."""

    el: Tag
    row: int
    col: int
    colspan: int
    rowspan: int


@dataclass
class TableGrid:
    expected_cols: int
    header_cells: list[GridCell] = field(default_factory=list)
    body_cells: list[GridCell] = field(default_factory=list)
    row_widths: list[int] = field(default_factory=list)
    col_has_content: list[bool] = field(default_factory=list)
    # Per body row: columns held by a rowspan from an earlier row
    reserved_cols: list[set[int]] = field(default_factory=list)

    def header_cell_at(self, col: int) -> GridCell | None:
        """Return the header cell whose colspan covers logical column *col*."""
        for cell in self.header_cells:
            if cell.col <= col < cell.col + cell.colspan:
                return cell
        return None


def expected_cols_from_header(header_cells: list[Tag]) -> int:
    """Sum of header colspans (0 when there is no header)."""
    return sum(span(c, "colspan") for c in header_cells)


def build_grid(header_row: Tag | None, body_rows: list[Tag]) -> TableGrid:
    """Place every header and body cell on the logical grid and measure each body row."""
    header_els = row_cells(header_row) if header_row is not None else []
    header_expected = expected_cols_from_header(header_els)

    header_cells: list[GridCell] = []
    col = 0
    for cell in header_els:
        colspan = span(cell, "colspan")
        header_cells.append(GridCell(cell, -1, col, colspan, span(cell, "rowspan")))
        col += colspan

    pending: list[int] = []  # rows each column stays reserved for
    row_widths: list[int] = [0] * len(body_rows)
    body_cells: list[GridCell] = []
    reserved_cols: list[set[int]] = []
    col_has_content: list[bool] = [False] * max(header_expected, 1)

    def _reserved(c: int) -> bool:
        return c < len(pending) and pending[c] > 0

    for r_idx, tr in enumerate(body_rows):
        col = 0
        right_edge = 0
        reserved_cols.append({c for c in range(len(pending)) if _reserved(c)})

        for cell in row_cells(tr):
            while _reserved(col):
                col += 1

            colspan = span(cell, "colspan")
            rowspan = span(cell, "rowspan")
            body_cells.append(GridCell(cell, r_idx, col, colspan, rowspan))

            if cell_has_content(cell):
                needed = col + colspan
                if needed > len(col_has_content):
                    col_has_content.extend([False] * (needed - len(col_has_content)))
                for i in range(colspan):
                    col_has_content[col + i] = True

            if rowspan > 1:
                needed = col + colspan
                if needed > len(pending):
                    pending.extend([0] * (needed - len(pending)))
                # Counts this row too; the end-of-row decrement leaves rowspan - 1
                for i in range(colspan):
                    pending[col + i] = max(pending[col + i], rowspan)

            col += colspan
            right_edge = max(right_edge, col)

        # Columns held by a rowspan still count toward this row's width
        for c, remaining in enumerate(pending):
            if remaining > 0:
                right_edge = max(right_edge, c + 1)
        row_widths[r_idx] = right_edge

        pending = [max(0, remaining - 1) for remaining in pending]

    expected_cols = header_expected if header_expected > 0 else max(row_widths, default=0)

    # Never truncate a column that carries real data
    final_width = max(expected_cols, len(col_has_content))
    normalized = col_has_content + [False] * (final_width - len(col_has_content))

    return TableGrid(
        expected_cols=expected_cols,
        header_cells=header_cells,
        body_cells=body_cells,
        row_widths=row_widths,
        col_has_content=normalized[:final_width],
        reserved_cols=reserved_cols,
    )

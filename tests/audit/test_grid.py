"""Unit tests for logical grid reconstruction (colspan/rowspan placement)."""

# pylint: disable=missing-class-docstring,missing-function-docstring

from tablerepair.audit.grid import build_grid
from tablerepair.audit.markup import own_rows, parse_html


def grid_for(html: str, with_header: bool = True):
    """Build the grid of the first table, treating its first row as the header."""
    rows = own_rows(parse_html(html).find("table"))
    if with_header:
        return build_grid(rows[0], rows[1:])
    return build_grid(None, rows)


def positions(grid) -> list[tuple[int, int]]:
    return [(c.row, c.col) for c in grid.body_cells]


# ===========================================================================
# Plain tables (no spans)
# ===========================================================================


class TestPlainTables:

    def test_row_widths_equal_cell_counts(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th><th>C</th></tr>"
            "<tr><td>1</td><td>2</td><td>3</td></tr>"
            "<tr><td>4</td><td>5</td></tr></table>"
        )
        assert grid.row_widths == [3, 2]

    def test_expected_cols_is_header_width(self):
        grid = grid_for("<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td>2</td></tr></table>")
        assert grid.expected_cols == 2

    def test_every_column_with_text_has_content(self):
        grid = grid_for("<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td>2</td></tr></table>")
        assert grid.col_has_content == [True, True]

    def test_empty_column_has_no_content(self):
        grid = grid_for("<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td> </td></tr></table>")
        assert grid.col_has_content == [True, False]

    def test_header_cells_sit_on_row_minus_one(self):
        grid = grid_for("<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td>2</td></tr></table>")
        assert [(c.row, c.col) for c in grid.header_cells] == [(-1, 0), (-1, 1)]


# ===========================================================================
# Rowspan reservation
# ===========================================================================


class TestRowspan:

    def test_rowspan_two_reserves_column_in_next_row(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th></tr>"
            '<tr><td rowspan="2">x</td><td>1</td></tr>'
            "<tr><td>2</td></tr></table>"
        )
        assert positions(grid) == [(0, 0), (0, 1), (1, 1)]
        assert grid.row_widths == [2, 2]

    def test_rowspan_three_reserves_two_further_rows(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th></tr>"
            '<tr><td rowspan="3">x</td><td>1</td></tr>'
            "<tr><td>2</td></tr>"
            "<tr><td>3</td></tr>"
            "<tr><td>4</td><td>5</td></tr></table>"
        )
        assert positions(grid) == [(0, 0), (0, 1), (1, 1), (2, 1), (3, 0), (3, 1)]
        assert grid.row_widths == [2, 2, 2, 2]

    def test_reservation_ends_after_span(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th></tr>"
            '<tr><td rowspan="2">x</td><td>1</td></tr>'
            "<tr><td>2</td></tr>"
            "<tr><td>3</td></tr></table>"
        )
        # Third body row is no longer covered by the rowspan
        assert positions(grid)[-1] == (2, 0)
        assert grid.row_widths[-1] == 1

    def test_rowspan_in_middle_column(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th><th>C</th></tr>"
            '<tr><td>1</td><td rowspan="2">m</td><td>2</td></tr>'
            "<tr><td>3</td><td>4</td></tr></table>"
        )
        assert positions(grid) == [(0, 0), (0, 1), (0, 2), (1, 0), (1, 2)]
        assert grid.row_widths == [3, 3]

    def test_reserved_columns_per_row(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th><th>C</th></tr>"
            '<tr><td>1</td><td rowspan="2" colspan="2">m</td></tr>'
            "<tr><td>3</td></tr>"
            "<tr><td>4</td><td>5</td><td>6</td></tr></table>"
        )
        assert grid.reserved_cols == [set(), {1, 2}, set()]

    def test_unparseable_rowspan_counts_as_one(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th></tr>"
            '<tr><td rowspan="abc">x</td><td>1</td></tr>'
            "<tr><td>2</td><td>3</td></tr></table>"
        )
        assert positions(grid) == [(0, 0), (0, 1), (1, 0), (1, 1)]


# ===========================================================================
# Colspan and expected columns
# ===========================================================================


class TestColspan:

    def test_header_colspans_sum_to_expected(self):
        grid = grid_for(
            '<table><tr><th colspan="2">A</th><th>B</th></tr>'
            "<tr><td>1</td><td>2</td><td>3</td></tr></table>"
        )
        assert grid.expected_cols == 3

    def test_body_colspan_advances_cursor(self):
        grid = grid_for(
            "<table><tr><th>A</th><th>B</th><th>C</th></tr>"
            '<tr><td colspan="2">1</td><td>2</td></tr></table>'
        )
        assert positions(grid) == [(0, 0), (0, 2)]
        assert grid.row_widths == [3]

    def test_colspan_content_marks_every_covered_column(self):
        grid = grid_for('<table><tr><th>A</th><th>B</th></tr><tr><td colspan="2">x</td></tr></table>')
        assert grid.col_has_content == [True, True]

    def test_header_cell_at_follows_colspan(self):
        grid = grid_for(
            '<table><tr><th colspan="2">A</th><th>B</th></tr>'
            "<tr><td>1</td><td>2</td><td>3</td></tr></table>"
        )
        assert grid.header_cell_at(1).el.get_text() == "A"
        assert grid.header_cell_at(2).el.get_text() == "B"
        assert grid.header_cell_at(3) is None


class TestExpectedColumnDerivation:

    def test_no_header_uses_widest_row(self):
        grid = grid_for("<table><tr><td>1</td></tr><tr><td>2</td><td>3</td><td>4</td></tr></table>", with_header=False)
        assert grid.expected_cols == 3

    def test_content_beyond_header_is_not_truncated(self):
        grid = grid_for("<table><tr><th>A</th></tr><tr><td>1</td><td>2</td></tr></table>")
        assert grid.expected_cols == 1
        assert grid.col_has_content == [True, True]

    def test_image_counts_as_content(self):
        grid = grid_for('<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td><img src="x.png"></td></tr></table>')
        assert grid.col_has_content == [True, True]

    def test_line_break_counts_as_content(self):
        grid = grid_for("<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td><br></td></tr></table>")
        assert grid.col_has_content == [True, True]

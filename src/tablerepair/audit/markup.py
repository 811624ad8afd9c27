"""BeautifulSoup helpers shared by the audit, the repair analysis and output reconstruction.

The key contract is ``is_top_level_table``: a table is top-level when the walk
from its parent upwards reaches the root (or ``stop_at``) without meeting
another ``<table>``.  Nested tables therefore never receive their own
positional index inside a field.
"""

import re

from bs4 import BeautifulSoup, Tag

from tablerepair.audit.patterns import MEDIA_TAGS, ROW_GROUP_TAGS

PARSER = "html.parser"

LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")
NEWLINE_RE = re.compile(r"\n")


def parse_html(html: str) -> BeautifulSoup:
    """Parse a markup fragment with the lenient stdlib-backed parser."""
    return BeautifulSoup(html or "", PARSER)


def is_top_level_table(table: Tag, stop_at: Tag | None = None) -> bool:
    """Return True if no ancestor of *table* (below *stop_at*) is itself a table."""
    parent = table.parent
    while parent is not None and parent is not stop_at:
        if parent.name == "table":
            return False
        parent = parent.parent
    return True


def find_top_level_tables(root: Tag) -> list[Tag]:
    """Return every top-level ``<table>`` under *root*, in document order."""
    return [t for t in root.find_all("table") if is_top_level_table(t, stop_at=root)]


def top_level_table_sources(html: str) -> list[str]:
    """Return the source markup of each top-level table in *html*, as written.

    Slices come from parser positions, so entity references and attribute
    quoting are kept exactly as they appear in the field.
    """
    soup = parse_html(html)
    line_starts = line_offsets(html)
    sources = []
    for table in find_top_level_tables(soup):
        bounds = source_span(table, line_starts, len(html))
        sources.append(_trim_after_table(html[bounds[0] : bounds[1]]) if bounds else str(table))
    return sources


def _trim_after_table(chunk: str) -> str:
    """Drop trailing text after the closing ``</table>`` when every table in *chunk* is closed."""
    lowered = chunk.lower()
    if lowered.count("<table") != lowered.count("</table"):
        return chunk
    end = lowered.find(">", lowered.rfind("</table"))
    return chunk[: end + 1] if end != -1 else chunk


# ─── Source Positions ────────────────────────────────────────────────────────


def line_offsets(source: str) -> list[int]:
    """Offset at which each source line starts (index 0 is line 1)."""
    offsets = [0]
    offsets.extend(m.end() for m in NEWLINE_RE.finditer(source))
    return offsets


def _next_tag_outside(tag: Tag) -> Tag | None:
    last = tag
    for last in tag.descendants:
        pass
    for element in last.next_elements:
        if isinstance(element, Tag):
            return element
    return None


def source_span(tag: Tag, line_starts: list[int], source_len: int) -> tuple[int, int] | None:
    """Return ``[start, end)`` of *tag* in the parsed source.

    The end is where the next element outside *tag* starts, so the span also
    holds the closing tag and any whitespace after it.  None when the parser
    recorded no position.
    """
    if tag.sourceline is None or tag.sourcepos is None:
        return None
    start = line_starts[tag.sourceline - 1] + tag.sourcepos
    following = _next_tag_outside(tag)
    if following is None or following.sourceline is None:
        return start, source_len
    return start, line_starts[following.sourceline - 1] + following.sourcepos


def direct_child(tag: Tag, name: str) -> Tag | None:
    """Return the first direct child element of *tag* named *name*."""
    return tag.find(name, recursive=False)


def own_rows(table: Tag) -> list[Tag]:
    """Return the table's own ``<tr>`` rows (direct or via thead/tbody/tfoot), skipping nested tables."""
    rows: list[Tag] = []
    for child in table.find_all(True, recursive=False):
        if child.name == "tr":
            rows.append(child)
        elif child.name in ROW_GROUP_TAGS:
            rows.extend(child.find_all("tr", recursive=False))
    return rows


def row_cells(row: Tag) -> list[Tag]:
    """Return the ``<td>``/``<th>`` cells of one row, in order."""
    return row.find_all(["td", "th"], recursive=False)


def cell_text(cell: Tag | None) -> str:
    """Return the trimmed text content of a cell (empty for None)."""
    if cell is None:
        return ""
    return cell.get_text().strip()


def inner_html(tag: Tag) -> str:
    """Return the serialized children of *tag* (the DOM ``innerHTML``)."""
    return tag.decode_contents()


def cell_has_content(cell: Tag) -> bool:
    """A cell has content if it has visible text, a media element, or a line break."""
    if cell_text(cell):
        return True
    if cell.find(MEDIA_TAGS) is not None:
        return True
    return cell.find("br") is not None


def safe_int(value, fallback: int = 1) -> int:
    """Parse a span attribute by its leading digits; anything else or below 1 yields *fallback*."""
    if value is None:
        return fallback
    match = LEADING_INT_RE.match(str(value))
    if not match:
        return fallback
    number = int(match.group(1))
    return number if number >= 1 else fallback


def span(cell: Tag, attr: str) -> int:
    """Return the cell's ``colspan``/``rowspan`` as a positive int."""
    return safe_int(cell.get(attr), 1)

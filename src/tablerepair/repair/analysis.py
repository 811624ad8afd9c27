"""Structural diagnosis of a broken table before it is sent for repair.

Everything here is a pure function of the markup, so the target column count
and the instruction variant chosen for a given table are reproducible without
calling any model.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from bs4 import Tag

from tablerepair.audit.classifiers import clean_header_text, is_generic_header, is_placeholder_header_word
from tablerepair.audit.detector import split_header_and_body
from tablerepair.audit.markup import cell_text, own_rows, parse_html, row_cells
from tablerepair.audit.patterns import COMPARATIVE_RE, MEDIA_TAGS

# Ghost-column count above which the prompt asks for mass deletion
MASS_GHOST_THRESHOLD = 3

# Inline math in a header marks a data cell promoted to the header row
_INLINE_MATH_RE = re.compile(r"\$[^$]+\$")


class Instruction(str, Enum):
    """Structural-instruction variants, listed in selection priority order."""

    ADAPTIVE = "adaptive"
    COMPARATIVE = "comparative"
    HEADER_COLSPAN = "header_colspan"
    MASS_GHOST = "mass_ghost"
    MINOR_GHOST = "minor_ghost"
    GENERIC = "generic"


@dataclass(frozen=True)
class HeaderHealth:
    broken: bool
    reason: str = ""


@dataclass
class TableStructure:
    header_cols: int = 0
    real_cols: int = 0
    ghost_cols: int = 0
    generic_headers: list[str] = field(default_factory=list)
    header_health: HeaderHealth = field(default_factory=lambda: HeaderHealth(False))

    @property
    def has_ghost_columns(self) -> bool:
        return self.ghost_cols > 0


def _first_table(html: str) -> Tag | None:
    return parse_html(html).find("table")


# ─── Column Counting ─────────────────────────────────────────────────────────


def count_real_columns(html: str) -> int:
    """Count header positions that receive text or media from at least one body row.

    Cells are matched to header positions by raw index (spans ignored).  A
    non-generic header over a table with no body rows counts as real.
    """
    table = _first_table(html)
    if table is None:
        return 0

    header_row, body_rows = split_header_and_body(table)
    header_cells = row_cells(header_row) if header_row is not None else []
    max_cols = len(header_cells)
    if max_cols == 0:
        return 0

    has_real = [False] * max_cols
    for row in body_rows:
        for idx, cell in enumerate(row_cells(row)[:max_cols]):
            if cell_text(cell) or cell.find(MEDIA_TAGS) is not None:
                has_real[idx] = True

    if not body_rows:
        for idx, cell in enumerate(header_cells):
            if not is_generic_header(cell_text(cell)):
                has_real[idx] = True

    return sum(has_real)


def count_expected_cols(html: str) -> int:
    """Return the largest raw cell count of any row of the first table (0 without a table)."""
    table = _first_table(html)
    if table is None:
        return 0
    return max((len(row_cells(tr)) for tr in own_rows(table)), default=0)


def compute_target_columns(real_cols: int, expected_cols: int) -> int:
    """Use the real-data column count unless it collapsed to ≤1 while the hint says more."""
    if real_cols <= 1 and expected_cols > 1:
        return expected_cols
    return real_cols


# ─── Header Diagnosis ────────────────────────────────────────────────────────


def _header_cells(table: Tag) -> list[Tag]:
    header_row, _ = split_header_and_body(table)
    return row_cells(header_row) if header_row is not None else []


def extract_headers(html: str) -> list[str]:
    """Return the normalised (lowercased, whitespace-cleaned) header texts of the first table."""
    table = _first_table(html)
    if table is None:
        return []
    return [clean_header_text(c.get_text()) for c in _header_cells(table)]


def are_headers_broken(headers: list[str]) -> HeaderHealth:
    """Decide whether a header row is too damaged to be trusted as-is."""
    if not headers:
        return HeaderHealth(True, "No headers found")

    counts: dict[str, int] = {}
    for h in headers:
        key = clean_header_text(h)
        counts[key] = counts.get(key, 0) + 1
    duplicated = sum(n for n in counts.values() if n >= 2)
    if duplicated > len(headers) * 0.5:
        return HeaderHealth(True, f"{duplicated}/{len(headers)} headers are duplicates")

    placeholders = sum(1 for h in headers if is_placeholder_header_word(h))
    if placeholders >= 2:
        return HeaderHealth(True, f"{placeholders} placeholder headers detected")

    with_data = [
        h
        for h in headers
        if len(h.strip()) > 100 or _INLINE_MATH_RE.search(h) or "\n" in h.strip() or "<strong>" in h.lower()
    ]
    if len(with_data) >= 2:
        return HeaderHealth(True, "Headers contain data or formulas")

    generic = sum(1 for h in headers if is_generic_header(h))
    if generic > len(headers) * 0.4:
        return HeaderHealth(True, f"{generic}/{len(headers)} headers are generic/empty")

    return HeaderHealth(False)


def analyze_table_structure(html: str) -> TableStructure:
    """Measure header width, real data width, ghost columns and generic header names."""
    table = _first_table(html)
    if table is None:
        return TableStructure()

    header_cells = _header_cells(table)
    raw_headers = [c.get_text().strip() for c in header_cells]
    real_cols = count_real_columns(html)

    return TableStructure(
        header_cols=len(header_cells),
        real_cols=real_cols,
        ghost_cols=max(0, len(header_cells) - real_cols),
        generic_headers=[h or "(empty)" for h in raw_headers if is_generic_header(h)],
        header_health=are_headers_broken(raw_headers),
    )


def choose_structural_instruction(structure: TableStructure, target_cols: int, html: str) -> Instruction:
    """Pick the structural instruction for the prompt, first matching rule wins."""
    if target_cols <= 1:
        return Instruction.ADAPTIVE
    if COMPARATIVE_RE.search(html) and target_cols == 2:
        return Instruction.COMPARATIVE
    if structure.header_cols < target_cols:
        return Instruction.HEADER_COLSPAN
    if structure.ghost_cols > MASS_GHOST_THRESHOLD:
        return Instruction.MASS_GHOST
    if structure.has_ghost_columns:
        return Instruction.MINOR_GHOST
    return Instruction.GENERIC
